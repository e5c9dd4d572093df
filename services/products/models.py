from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field

MAX_PRODUCT_IMAGES = 4

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str # creator
    name: str
    description: str = ""
    price: Decimal
    quantity: int # on-hand stock, never negative
    category: str = ""
    image_url: str = ""
    images: List[str] = []
    is_favourite: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

def product_document(product: ProductDB) -> dict:
    """Mongo document for a product; prices are stored as doubles."""
    doc = product.dict(by_alias=True, exclude={"id"})
    doc["price"] = float(doc["price"])
    return doc
