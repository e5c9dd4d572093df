from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field

class CartItemDB(BaseModel):
    product_id: str
    quantity: int
    price: Decimal # Snapshot taken when the item was added
    name: Optional[str] = None

class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
