from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, List, Optional
import math
from pydantic import BaseModel, Field

class PaymentStatus(str, Enum):
    INITIATED = "Initiated"
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

# Business policy, not a derived invariant: which provider statuses count as
# final. A terminal status is never overwritten by a non-terminal one.
TERMINAL_STATUSES = frozenset({"completed", "cancelled", "canceled", "expired", "failed"})
NON_TERMINAL_STATUSES = frozenset({"initiated", "pending", "unknown"})
CANCELLABLE_STATUSES = NON_TERMINAL_STATUSES | {""}

def normalize_status(value: Any) -> str:
    return str(value or "").strip().lower()

def is_completed(value: Any) -> bool:
    return normalize_status(value) == "completed"

def resolve_status(stored: Optional[str], incoming: Optional[str]) -> str:
    """
    Status to persist after a provider lookup.

    The incoming status wins unless it would move a terminal payment back to
    a non-terminal one, e.g. a delayed lookup reporting "Pending" for a payment
    that has already completed or been cancelled.
    """
    incoming = incoming or PaymentStatus.UNKNOWN.value
    if normalize_status(stored) in TERMINAL_STATUSES and normalize_status(incoming) in NON_TERMINAL_STATUSES:
        return stored
    return incoming

class PurchaseItem(BaseModel):
    product_id: str
    quantity: int

def _whole_quantity(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return math.floor(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0

def _product_ref(item: dict) -> str:
    ref = item.get("product_id") or item.get("productId") or ""
    return str(ref).strip()

def normalize_purchase_items(raw: Any) -> List[PurchaseItem]:
    """
    Build the line-item list for a payment.

    Accepts a list of ``{product_id|productId, quantity}`` mappings, or a
    metadata mapping holding either an ``items`` list or a single
    ``productId`` / ``quantity`` pair. Quantities are floored to whole
    numbers; entries without a product or with a non-positive quantity are
    dropped.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        if isinstance(raw.get("items"), list):
            entries: Iterable = raw["items"]
        elif _product_ref(raw):
            entries = [raw]
        else:
            entries = []
    elif isinstance(raw, list):
        entries = raw
    else:
        return []

    items = []
    for entry in entries:
        if isinstance(entry, PurchaseItem):
            entry = entry.dict()
        if not isinstance(entry, dict):
            continue
        product_id = _product_ref(entry)
        quantity = _whole_quantity(entry.get("quantity"))
        if product_id and quantity > 0:
            items.append(PurchaseItem(product_id=product_id, quantity=quantity))
    return items

def stored_purchase_items(doc: dict) -> List[PurchaseItem]:
    """Line items of a saved payment; they were normalized when it was initiated."""
    return [PurchaseItem(**item) for item in doc.get("purchase_items") or []]

def to_paisa(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

class PaymentDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    order_id: str
    order_name: str
    amount: int # minor units (paisa)
    pidx: str
    status: str = PaymentStatus.INITIATED.value
    provider: str = "Khalti"
    purchase_items: List[PurchaseItem] = []
    processed_at: Optional[datetime] = None
    raw: dict = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
