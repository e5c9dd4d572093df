from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input, is_image_ref
from services.products.models import MAX_PRODUCT_IMAGES

def check_image_ref(v: Optional[str]) -> Optional[str]:
    if v and not is_image_ref(v):
        raise ValueError("image must be an http(s) URL or a base64 image data URL")
    return v

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)
    category: str = ""
    description: str = ""
    image_url: str = ""
    images: List[str] = Field(default_factory=list, max_length=MAX_PRODUCT_IMAGES)
    is_favourite: Optional[bool] = None

    @field_validator('name', 'category', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('name')
    def name_not_blank(cls, v):
        if not v:
            raise ValueError("name is required")
        return v

    @field_validator('image_url')
    def image_url_ref(cls, v):
        return check_image_ref(v.strip())

    @field_validator('images')
    def image_refs(cls, v):
        return [check_image_ref(i.strip()) for i in v]

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    quantity: Optional[int] = Field(None, ge=0)
    price: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    images: Optional[List[str]] = Field(None, max_length=MAX_PRODUCT_IMAGES)
    is_favourite: Optional[bool] = None

    @field_validator('name', 'category', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('image_url')
    def image_url_ref(cls, v):
        return check_image_ref(v.strip()) if v is not None else v

    @field_validator('images')
    def image_refs(cls, v):
        return [check_image_ref(i.strip()) for i in v] if v is not None else v

class ProductResponse(BaseModel):
    id: str
    user_id: str
    name: str
    description: str = ""
    price: Decimal
    quantity: int
    category: str = ""
    image_url: str = ""
    images: List[str] = []
    is_favourite: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    total_pages: int
    current_page: int
    limit: int
