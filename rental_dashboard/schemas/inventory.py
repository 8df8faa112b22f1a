from typing import Optional

from pydantic import BaseModel, ConfigDict


class ItemUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    category: Optional[str] = None
    quantityTotal: int = 0
    quantityDamaged: int = 0
    rentalPrice: float = 0

    def to_fields(self) -> dict:
        return {
            "name": self.name,
            "category": self.category,
            "quantity_total": self.quantityTotal,
            "quantity_damaged": self.quantityDamaged,
            "rental_price": self.rentalPrice,
        }
