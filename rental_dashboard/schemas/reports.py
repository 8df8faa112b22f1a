from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalID: Optional[int] = None
    itemName: str = ""
    quantity: int = 0
    type: str = ""
    notes: Optional[str] = None


class ReportIdsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reportIDs: List[int]
