from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Any, List, Optional
from datetime import datetime
from shared.security_config import sanitize_input
from services.payments.models import PurchaseItem, normalize_purchase_items
from services.products.schemas import ProductResponse

class PaymentInitiate(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in paisa")
    order_id: str = Field(..., min_length=1, validation_alias=AliasChoices("order_id", "orderId"))
    order_name: str = Field(..., min_length=1, validation_alias=AliasChoices("order_name", "orderName"))
    items: Optional[List[dict]] = None
    # Older clients send {"productId", "quantity"} or {"items": [...]} here
    metadata: Optional[Any] = None

    @field_validator('order_id', 'order_name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    def purchase_items(self) -> List[PurchaseItem]:
        return normalize_purchase_items(self.items if self.items is not None else self.metadata)

class PaymentReference(BaseModel):
    pidx: str = Field(..., min_length=1)

    @field_validator('pidx')
    def strip_pidx(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("pidx is required")
        return v

class PaymentCancel(PaymentReference):
    reason: Optional[str] = None

class PaymentItemResponse(BaseModel):
    product_id: str
    quantity: int
    product_name: str = ""

class PaymentOwner(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    is_admin: bool = False

class PaymentResponse(BaseModel):
    id: str
    user_id: str
    order_id: str
    order_name: str
    amount: int
    pidx: str
    status: str
    provider: str = "Khalti"
    purchase_items: List[PaymentItemResponse] = []
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    user: Optional[PaymentOwner] = None

class PaymentPage(BaseModel):
    payments: List[PaymentResponse]
    total: int
    total_pages: int
    current_page: int

class VerifyResponse(BaseModel):
    pidx: str
    status: str
    is_completed: bool
    payload: dict = {}

class CancelResponse(BaseModel):
    pidx: str
    status: str

class ConfirmResponse(BaseModel):
    already_processed: bool = False
    products: List[ProductResponse] = []
