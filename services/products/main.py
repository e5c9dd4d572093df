from fastapi import APIRouter, Depends, Query, Request, status
from datetime import datetime
from typing import Optional
import logging
import math
import re

from shared.utils import (
    get_db, get_current_user, require_admin, str_to_oid,
    SuccessResponse, NotFoundException,
)
from shared.security_config import limiter

from services.products.schemas import ProductCreate, ProductUpdate, ProductResponse, ProductListResponse
from services.products.models import ProductDB, MAX_PRODUCT_IMAGES, product_document

logger = logging.getLogger("inventory-api.products")

router = APIRouter(prefix="/products", tags=["products"])

def to_response(doc: dict) -> ProductResponse:
    doc["id"] = str(doc["_id"])
    return ProductResponse(**doc)

async def find_product(db, product_id: str) -> dict:
    product = await db.products.find_one({"_id": str_to_oid(product_id, "Product not found")})
    if not product:
        raise NotFoundException("Product not found")
    return product

# --- Endpoints ---

@router.get("", response_model=SuccessResponse[ProductListResponse])
@limiter.limit("60/minute")
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    favourite: Optional[bool] = None,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    query = {}
    if favourite is not None:
        query["is_favourite"] = favourite
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    skip = (page - 1) * limit
    total = await db.products.count_documents(query)
    cursor = db.products.find(query).sort("updated_at", -1).skip(skip).limit(limit)
    products_docs = await cursor.to_list(length=limit)

    return SuccessResponse(data=ProductListResponse(
        products=[to_response(doc) for doc in products_docs],
        total=total,
        total_pages=math.ceil(total / limit),
        current_page=page,
        limit=limit,
    ))

@router.post("", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
async def create_product(product: ProductCreate, request: Request, admin: dict = Depends(require_admin), db=Depends(get_db)):
    payload = product.dict()
    # A lone image_url seeds the gallery
    if not payload["images"] and payload["image_url"]:
        payload["images"] = [payload["image_url"]]
    payload["images"] = payload["images"][:MAX_PRODUCT_IMAGES]
    payload["is_favourite"] = bool(payload["is_favourite"])

    product_db = ProductDB(user_id=str(admin["_id"]), **payload)
    new_product = await db.products.insert_one(product_document(product_db))
    created_product = await db.products.find_one({"_id": new_product.inserted_id})
    logger.info("Product created", extra={"event": "product_created", "product_id": str(new_product.inserted_id)})

    return SuccessResponse(data=to_response(created_product), message="Product created successfully")

@router.get("/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit("60/minute")
async def get_product(product_id: str, request: Request, user: dict = Depends(get_current_user), db=Depends(get_db)):
    product = await find_product(db, product_id)
    return SuccessResponse(data=to_response(product))

@router.patch("/{product_id}/favourite", response_model=SuccessResponse[ProductResponse])
async def toggle_favourite(product_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    product = await find_product(db, product_id)
    await db.products.update_one(
        {"_id": product["_id"]},
        {"$set": {"is_favourite": not product.get("is_favourite", False), "updated_at": datetime.utcnow()}}
    )
    updated_product = await db.products.find_one({"_id": product["_id"]})
    return SuccessResponse(data=to_response(updated_product))

@router.put("/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(product_id: str, product_update: ProductUpdate, admin: dict = Depends(require_admin), db=Depends(get_db)):
    product = await find_product(db, product_id)

    update_data = {k: v for k, v in product_update.dict().items() if v is not None}
    if "price" in update_data:
        update_data["price"] = float(update_data["price"])
    if "images" in update_data:
        update_data["images"] = update_data["images"][:MAX_PRODUCT_IMAGES]

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        await db.products.update_one({"_id": product["_id"]}, {"$set": update_data})

    updated_product = await db.products.find_one({"_id": product["_id"]})
    return SuccessResponse(data=to_response(updated_product), message="Product updated successfully")

@router.delete("/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(product_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    product = await find_product(db, product_id)
    await db.products.delete_one({"_id": product["_id"]})
    logger.info("Product deleted", extra={"event": "product_deleted", "product_id": product_id})
    return SuccessResponse(data={"id": product_id}, message="Product deleted")
