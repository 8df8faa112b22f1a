from datetime import date, time
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class OpenWorkspaceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    editRentalIDs: List[int] = []


class CartLineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemKind: Literal["rental", "decoration"]
    itemID: str
    quantity: int
    days: Optional[int] = None


class CartDatesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentDate: Optional[date] = None
    returnDate: Optional[date] = None


class CustomPriceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool
    amount: Optional[float] = None


class SubmitTransactionDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    renterName: str = ""
    clientPhone: Optional[str] = None
    clientAddress: Optional[str] = None
    rentDate: Optional[date] = None
    returnDate: Optional[date] = None
    rentTime: Optional[time] = None
    returnTime: Optional[time] = None
    status: str = "reserved"
    paymentStatus: str = "Pending"
    paymentMethod: Optional[str] = None
    advancePayment: float = 0


class RentalIdsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalIDs: List[int]


class ReturnCommitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalIDs: List[int]
    outcome: Literal["all_good", "partial_missing", "damaged"]
    missing: Dict[int, int] = {}
    notes: Optional[str] = None
    damageDescription: Optional[str] = None
    severities: Dict[int, str] = {}
