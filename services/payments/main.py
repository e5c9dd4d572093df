from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from typing import List
from shared.errors import unwrap
from shared.utils import get_current_user, require_admin, SuccessResponse
from shared.security_config import limiter

from services.payments.schemas import (
    PaymentInitiate, PaymentReference, PaymentCancel,
    PaymentResponse, PaymentPage, VerifyResponse, CancelResponse, ConfirmResponse,
)
from services.payments.service import PaymentService, ADMIN_PAGE_DEFAULT

router = APIRouter(prefix="/payment", tags=["payments"])

def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service

# --- Endpoints ---

@router.post("/initiate", response_model=SuccessResponse[dict])
@limiter.limit("10/minute")
async def initiate_payment(
    payment: PaymentInitiate,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.initiate(
        owner_id=str(user["_id"]),
        amount=payment.amount,
        order_id=payment.order_id,
        order_name=payment.order_name,
        items=payment.purchase_items(),
    )
    return SuccessResponse(data=unwrap(result), message=result.message)

@router.post("/verify", response_model=SuccessResponse[VerifyResponse])
@limiter.limit("30/minute")
async def verify_payment(
    reference: PaymentReference,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.verify(reference.pidx, str(user["_id"]))
    return SuccessResponse(data=unwrap(result))

@router.post("/cancel", response_model=SuccessResponse[CancelResponse])
@limiter.limit("30/minute")
async def cancel_payment(
    cancel: PaymentCancel,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.cancel(cancel.pidx, str(user["_id"]), cancel.reason)
    return SuccessResponse(data=unwrap(result), message=result.message)

@router.post("/confirm", response_model=SuccessResponse[ConfirmResponse])
@limiter.limit("10/minute")
async def confirm_purchase(
    reference: PaymentReference,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.confirm(reference.pidx, str(user["_id"]))
    return SuccessResponse(data=unwrap(result), message=result.message)

@router.get("/mine", response_model=SuccessResponse[List[PaymentResponse]])
async def list_my_payments(
    include_initiated: bool = Query(False),
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.list_mine(str(user["_id"]), include_initiated=include_initiated)
    return SuccessResponse(data=unwrap(result))

@router.get("/admin", response_model=SuccessResponse[PaymentPage])
async def list_all_payments(
    page: int = Query(1),
    limit: int = Query(ADMIN_PAGE_DEFAULT),
    admin: dict = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    # Out of range values are clamped, not rejected
    result = await service.list_all(page=page, limit=limit)
    return SuccessResponse(data=unwrap(result))

@router.get("/receipt/{pidx}")
async def download_receipt(
    pidx: str,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    receipt = unwrap(await service.receipt(pidx.strip(), user))
    return Response(
        content=receipt.content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{receipt.filename}"'},
    )
