from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime

class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)

    @field_validator('product_id')
    def strip_product_id(cls, v):
        return v.strip()

class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0)

class CartItemResponse(BaseModel):
    product_id: str
    quantity: int
    price: Decimal
    name: Optional[str] = None

class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    updated_at: datetime
    total: Decimal
