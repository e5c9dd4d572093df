from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import math

from bson import ObjectId

from shared.errors import ErrorKind, Result
from shared.utils import Settings
from services.payments.gateway import KhaltiGateway
from services.payments.models import (
    CANCELLABLE_STATUSES, PaymentDB, PaymentStatus, PurchaseItem,
    is_completed, normalize_purchase_items, normalize_status, resolve_status,
    stored_purchase_items, to_paisa,
)
from services.payments.receipt import Receipt, ReceiptLine, receipt_filename, render_receipt_pdf
from services.payments.schemas import (
    CancelResponse, ConfirmResponse, PaymentItemResponse, PaymentOwner,
    PaymentPage, PaymentResponse, VerifyResponse,
)
from services.payments.store import AlreadyProcessedError, InsufficientStockError, PaymentStore
from services.products.main import to_response as to_product_response

logger = logging.getLogger("inventory-api.payments")

ADMIN_PAGE_DEFAULT = 50
ADMIN_PAGE_MAX = 200

NOT_FOUND = "Payment record not found"
ALREADY_PROCESSED = "Purchase already processed"


def to_payment_response(doc: dict, product_names: Dict[str, str], owners: Optional[Dict[str, dict]] = None) -> PaymentResponse:
    doc["id"] = str(doc["_id"])
    doc["purchase_items"] = [
        PaymentItemResponse(
            product_id=item.product_id,
            quantity=item.quantity,
            product_name=product_names.get(item.product_id, ""),
        )
        for item in stored_purchase_items(doc)
    ]
    owner = (owners or {}).get(doc.get("user_id"))
    if owner:
        doc["user"] = PaymentOwner(
            id=str(owner["_id"]),
            name=owner.get("name"),
            email=owner.get("email"),
            phone=owner.get("phone"),
            role=owner.get("role"),
            is_admin=bool(owner.get("is_admin")),
        )
    return PaymentResponse(**doc)


class PaymentService:
    """
    Payment lifecycle: initiate, verify, cancel and confirm, plus listings and receipts.

    Every operation returns a ``Result``; expected failures never raise.
    Stock only changes in ``confirm``, and at most once per payment.
    """

    def __init__(self, store: PaymentStore, gateway: KhaltiGateway, settings: Settings):
        self.store = store
        self.gateway = gateway
        self.settings = settings

    async def initiate(self, owner_id: str, amount: Any, order_id: str, order_name: str, items: Any = None) -> Result[dict]:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return Result.fail(ErrorKind.VALIDATION, "amount must be a positive whole number of paisa")
        if not (order_id or "").strip() or not (order_name or "").strip():
            return Result.fail(ErrorKind.VALIDATION, "order_id and order_name are required")

        purchase_items = normalize_purchase_items(items)
        invalid = [item.product_id for item in purchase_items if not ObjectId.is_valid(item.product_id)]
        if invalid:
            return Result.fail(ErrorKind.VALIDATION, f"Invalid product id: {invalid[0]}")
        if purchase_items:
            price = await self._items_price(purchase_items)
            if amount < price:
                return Result.fail(ErrorKind.VALIDATION, f"amount must cover the price of the items ({price} paisa)")

        initiated = await self.gateway.initiate(amount, order_id, order_name)
        if not initiated.ok:
            return initiated
        initiation = initiated.value

        record = PaymentDB(
            user_id=owner_id,
            order_id=order_id,
            order_name=order_name,
            amount=amount,
            pidx=initiation.pidx,
            status=initiation.raw.get("status") or PaymentStatus.INITIATED.value,
            purchase_items=purchase_items,
            raw=initiation.raw,
        )
        await self.store.create(record.dict(by_alias=True, exclude={"id"}))
        logger.info("Payment initiated", extra={
            "event": "payment_initiated", "pidx": initiation.pidx, "user_id": owner_id,
        })
        return Result.success(initiation.raw, message="Payment initiated")

    async def verify(self, pidx: str, owner_id: str, now: Optional[datetime] = None) -> Result[VerifyResponse]:
        record = await self.store.find_for_owner(pidx, owner_id)
        if not record:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_FOUND)

        looked_up = await self.gateway.lookup(pidx)
        if not looked_up.ok:
            return looked_up
        lookup = looked_up.value

        new_status = resolve_status(record.get("status"), lookup.status)
        await self.store.update(record["_id"], {
            "status": new_status,
            "raw": lookup.raw,
            "updated_at": now or datetime.utcnow(),
        })
        logger.info("Payment verified", extra={
            "event": "payment_verified", "pidx": pidx, "status": new_status, "user_id": owner_id,
        })
        return Result.success(VerifyResponse(
            pidx=pidx,
            status=new_status,
            is_completed=is_completed(new_status),
            payload=lookup.raw,
        ))

    async def cancel(self, pidx: str, owner_id: str, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> Result[CancelResponse]:
        record = await self.store.find_for_owner(pidx, owner_id)
        if not record:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_FOUND)

        current = normalize_status(record.get("status"))
        if current == "completed":
            return Result.fail(ErrorKind.INVALID_STATE, "Completed payments cannot be cancelled")
        if current not in CANCELLABLE_STATUSES:
            # Already final (expired, failed, cancelled): nothing to do
            return Result.success(CancelResponse(pidx=pidx, status=record.get("status")))

        now = now or datetime.utcnow()
        raw = dict(record.get("raw") or {})
        raw["client_cancelled_at"] = now.isoformat()
        if reason:
            raw["client_cancel_reason"] = reason
        await self.store.update(record["_id"], {
            "status": PaymentStatus.CANCELLED.value,
            "raw": raw,
            "updated_at": now,
        })
        logger.info("Payment cancelled", extra={"event": "payment_cancelled", "pidx": pidx, "user_id": owner_id})
        return Result.success(CancelResponse(pidx=pidx, status=PaymentStatus.CANCELLED.value), message="Payment cancelled")

    async def confirm(self, pidx: str, owner_id: str, now: Optional[datetime] = None) -> Result[ConfirmResponse]:
        record = await self.store.find_for_owner(pidx, owner_id)
        if not record:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_FOUND)
        if record.get("processed_at"):
            return Result.success(ConfirmResponse(already_processed=True), message=ALREADY_PROCESSED)
        if not is_completed(record.get("status")):
            return Result.fail(ErrorKind.INVALID_STATE, "Payment is not completed")

        items = [item for item in stored_purchase_items(record) if item.product_id and item.quantity > 0]
        if not items:
            return Result.fail(ErrorKind.INVALID_PURCHASE, "Payment is not linked to a product purchase")
        if any(not ObjectId.is_valid(item.product_id) for item in items):
            return Result.fail(ErrorKind.INVALID_PURCHASE, "Invalid purchase items")

        try:
            products = await self.store.apply_purchase(record["_id"], items, now or datetime.utcnow())
        except InsufficientStockError as exc:
            logger.warning("Stock shortfall on confirm", extra={
                "event": "stock_shortfall", "pidx": pidx, "product_id": exc.product_id,
            })
            return Result.fail(ErrorKind.INSUFFICIENT_STOCK, "Insufficient stock")
        except AlreadyProcessedError:
            return Result.success(ConfirmResponse(already_processed=True), message=ALREADY_PROCESSED)

        logger.info("Purchase confirmed", extra={"event": "purchase_confirmed", "pidx": pidx, "user_id": owner_id})
        return Result.success(
            ConfirmResponse(products=[to_product_response(p) for p in products]),
            message="Purchase confirmed",
        )

    async def list_mine(self, owner_id: str, include_initiated: bool = False,
                        now: Optional[datetime] = None) -> Result[List[PaymentResponse]]:
        ttl_days = max(self.settings.PAYMENT_INITIATED_TTL_DAYS, 0)
        if ttl_days:
            cutoff = (now or datetime.utcnow()) - timedelta(days=ttl_days)
            removed = await self.store.delete_stale_initiated(owner_id, cutoff)
            if removed:
                logger.info("Removed %d stale initiated payments", removed, extra={
                    "event": "payments_swept", "user_id": owner_id,
                })

        docs = await self.store.list_for_owner(owner_id, include_initiated)
        names = await self._product_names(docs)
        return Result.success([to_payment_response(doc, names) for doc in docs])

    async def list_all(self, page: int = 1, limit: int = ADMIN_PAGE_DEFAULT) -> Result[PaymentPage]:
        limit = min(max(limit, 1), ADMIN_PAGE_MAX)
        page = max(page, 1)

        total = await self.store.count()
        docs = await self.store.list_page((page - 1) * limit, limit)
        names = await self._product_names(docs)
        owners = await self.store.users_by_ids(doc.get("user_id") for doc in docs)
        return Result.success(PaymentPage(
            payments=[to_payment_response(doc, names, owners) for doc in docs],
            total=total,
            total_pages=max(1, math.ceil(total / limit)),
            current_page=page,
        ))

    async def receipt(self, pidx: str, owner: dict) -> Result[Receipt]:
        record = await self.store.find_for_owner(pidx, str(owner["_id"]))
        if not record:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_FOUND)

        items = stored_purchase_items(record)
        products = await self.store.products_by_ids(item.product_id for item in items)
        lines = []
        for item in items:
            product = products.get(item.product_id, {})
            price = product.get("price")
            lines.append(ReceiptLine(
                name=product.get("name") or "Unknown",
                quantity=item.quantity,
                unit_price=Decimal(str(price)) if price is not None else None,
            ))

        return Result.success(Receipt(
            filename=receipt_filename(owner.get("name"), lines, record.get("order_name")),
            content=render_receipt_pdf(record, lines),
        ))

    async def _product_names(self, docs: List[dict]) -> Dict[str, str]:
        ids = [item.product_id for doc in docs for item in stored_purchase_items(doc)]
        products = await self.store.products_by_ids(ids)
        return {pid: product.get("name", "") for pid, product in products.items()}

    async def _items_price(self, items: List[PurchaseItem]) -> int:
        """Current catalog price of the items in paisa; unknown products count as zero."""
        products = await self.store.products_by_ids(item.product_id for item in items)
        total = Decimal("0")
        for item in items:
            price = products.get(item.product_id, {}).get("price")
            if price is not None:
                total += Decimal(str(price)) * item.quantity
        return to_paisa(total)
