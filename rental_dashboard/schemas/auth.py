from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str = ""
    password: str = ""


class ProfileCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    fullname: str
    password: str
    role: Literal["admin", "staff"] = "staff"


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullname: Optional[str] = None
    role: Optional[Literal["admin", "staff"]] = None
    password: Optional[str] = None
