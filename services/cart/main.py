from fastapi import APIRouter, Depends, HTTPException, Request
from datetime import datetime
from decimal import Decimal
import logging
import uuid

from shared.errors import unwrap
from shared.utils import get_db, get_current_user, SuccessResponse, NotFoundException
from shared.security_config import limiter

from services.cart.schemas import CartItemAdd, CartItemUpdate, CartResponse, CartItemResponse
from services.cart.models import CartDB
from services.products.main import find_product
from services.payments.main import get_payment_service
from services.payments.models import to_paisa
from services.payments.service import PaymentService

logger = logging.getLogger("inventory-api.cart")

router = APIRouter(prefix="/cart", tags=["cart"])

async def load_cart(db, user_id: str) -> dict:
    cart = await db.carts.find_one({"user_id": user_id})
    if not cart:
        cart_db = CartDB(user_id=user_id, items=[])
        res = await db.carts.insert_one(cart_db.dict(by_alias=True, exclude={"id"}))
        cart = await db.carts.find_one({"_id": res.inserted_id})
    return cart

def to_response(cart: dict) -> CartResponse:
    items_resp = []
    total = Decimal(0)
    for item in cart.get("items", []):
        price = Decimal(str(item["price"]))
        total += price * item["quantity"]
        items_resp.append(CartItemResponse(
            product_id=item["product_id"],
            quantity=item["quantity"],
            price=price,
            name=item.get("name"),
        ))
    return CartResponse(user_id=cart["user_id"], items=items_resp, updated_at=cart["updated_at"], total=total)

async def save_items(db, user_id: str, items: list) -> dict:
    await db.carts.update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": datetime.utcnow()}},
        upsert=True,
    )
    return await db.carts.find_one({"user_id": user_id})

# --- Endpoints ---

@router.get("", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(request: Request, user: dict = Depends(get_current_user), db=Depends(get_db)):
    cart = await load_cart(db, str(user["_id"]))
    return SuccessResponse(data=to_response(cart))

@router.post("/items", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def add_to_cart(item: CartItemAdd, request: Request, user: dict = Depends(get_current_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    product = await find_product(db, item.product_id)
    product_id = str(product["_id"])

    cart = await load_cart(db, user_id)
    items = cart.get("items", [])
    existing = next((i for i in items if i["product_id"] == product_id), None)
    wanted = item.quantity + (existing["quantity"] if existing else 0)
    if product.get("quantity", 0) < wanted:
        raise HTTPException(status_code=400, detail="Insufficient stock")

    # Refresh the snapshot on every add
    if existing:
        existing.update(quantity=wanted, price=float(product["price"]), name=product["name"])
    else:
        items.append({
            "product_id": product_id,
            "quantity": item.quantity,
            "price": float(product["price"]),
            "name": product["name"],
        })

    cart = await save_items(db, user_id, items)
    return SuccessResponse(data=to_response(cart), message="Item added to cart")

@router.put("/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(product_id: str, update: CartItemUpdate, user: dict = Depends(get_current_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    cart = await db.carts.find_one({"user_id": user_id})
    if not cart:
        raise NotFoundException("Cart not found")

    items = cart.get("items", [])
    existing = next((i for i in items if i["product_id"] == product_id), None)
    if not existing:
        raise NotFoundException("Item not found in cart")

    product = await find_product(db, product_id)
    if product.get("quantity", 0) < update.quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")
    existing["quantity"] = update.quantity

    cart = await save_items(db, user_id, items)
    return SuccessResponse(data=to_response(cart))

@router.delete("/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    await db.carts.update_one(
        {"user_id": user_id},
        {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": datetime.utcnow()}}
    )
    cart = await load_cart(db, user_id)
    return SuccessResponse(data=to_response(cart))

@router.delete("", response_model=SuccessResponse[dict])
async def clear_cart(user: dict = Depends(get_current_user), db=Depends(get_db)):
    await db.carts.update_one(
        {"user_id": str(user["_id"])},
        {"$set": {"items": [], "updated_at": datetime.utcnow()}}
    )
    return SuccessResponse(message="Cart cleared")

@router.post("/checkout", response_model=SuccessResponse[dict])
@limiter.limit("10/minute")
async def checkout(
    request: Request,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Start a Khalti payment for everything in the cart.

    Prices are re-read from the catalog and stock is re-checked; the cart is
    left untouched until the purchase is confirmed.
    """
    user_id = str(user["_id"])
    cart = await db.carts.find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")

    total = Decimal(0)
    names = []
    for item in cart["items"]:
        product = await find_product(db, item["product_id"])
        if product.get("quantity", 0) < item["quantity"]:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")
        total += Decimal(str(product["price"])) * item["quantity"]
        names.append(product["name"])

    amount = to_paisa(total)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Cart total must be greater than zero")

    result = await service.initiate(
        owner_id=user_id,
        amount=amount,
        order_id=f"cart-{uuid.uuid4().hex}",
        order_name=names[0] if len(names) == 1 else f"{len(names)} products",
        items=[{"product_id": i["product_id"], "quantity": i["quantity"]} for i in cart["items"]],
    )
    payload = unwrap(result)
    logger.info("Checkout started", extra={"event": "checkout_started", "user_id": user_id, "pidx": payload.get("pidx")})
    return SuccessResponse(data={**payload, "amount": amount}, message=result.message)
