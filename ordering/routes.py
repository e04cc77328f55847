from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import FileResponse

from ordering.auth import Principal, get_principal, require_staff
from ordering.schemas import (
    CreateOrderRequest,
    DeviceTokenRecord,
    DeviceTokenRequest,
    OrderDetail,
    OrderRecord,
    ProofReceiptRead,
    RejectRequest,
    SelfTestResult,
    StoreStatus,
)

router = APIRouter()


def _state(request: Request):
    return request.app.state


@router.get("/health")
def health():
    return {"status": "ok"}


# ----- Store hours -----

@router.get("/store/status", response_model=StoreStatus)
def get_store_status(request: Request):
    return StoreStatus(is_open=_state(request).store_hours.is_admissible())


@router.put("/admin/store/status", response_model=StoreStatus)
def update_store_status(payload: StoreStatus, request: Request, principal: Principal = Depends(require_staff)):
    return StoreStatus(is_open=_state(request).store_hours.set_open(principal, payload.is_open))


# ----- Customer -----

@router.post("/orders", response_model=OrderDetail, status_code=201)
def create_order(
    payload: CreateOrderRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
):
    state = _state(request)
    order = state.machine.create_order(principal, payload)
    if state.settings.push_on_order_create:
        background_tasks.add_task(state.dispatcher.announce_new_order, order.id, principal.name)
    return order


@router.get("/orders", response_model=List[OrderDetail])
def list_my_orders(request: Request, principal: Principal = Depends(get_principal)):
    return _state(request).machine.list_orders(principal)


@router.get("/orders/{order_id}", response_model=OrderDetail)
def get_order(order_id: str, request: Request, principal: Principal = Depends(get_principal)):
    return _state(request).machine.get_order(principal, order_id)


@router.post("/orders/{order_id}/cancel", response_model=OrderRecord)
def cancel_order(order_id: str, request: Request, principal: Principal = Depends(get_principal)):
    return _state(request).machine.cancel(principal, order_id)


@router.post("/orders/{order_id}/payment-proof", response_model=ProofReceiptRead)
async def upload_payment_proof(
    order_id: str,
    request: Request,
    response: Response,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_principal),
):
    data = await file.read()
    receipt = await _state(request).proof_gate.submit_proof(principal, order_id, data, file.filename)
    if not receipt.status_advanced:
        # proof is on file, the order just did not move
        response.status_code = 202
    return receipt.to_read()


@router.post("/devices", response_model=DeviceTokenRecord)
def register_device(payload: DeviceTokenRequest, request: Request, principal: Principal = Depends(get_principal)):
    return _state(request).dispatcher.register_device(principal, payload.token, payload.platform)


# ----- Staff -----

@router.get("/admin/orders", response_model=List[OrderDetail])
def list_all_orders(request: Request, principal: Principal = Depends(require_staff)):
    return _state(request).machine.list_all_orders(principal)


@router.post("/admin/orders/{order_id}/accept", response_model=OrderRecord)
def accept_order(order_id: str, request: Request, principal: Principal = Depends(require_staff)):
    return _state(request).machine.accept(principal, order_id)


@router.post("/admin/orders/{order_id}/reject", response_model=OrderRecord)
def reject_order(order_id: str, payload: RejectRequest, request: Request,
                 principal: Principal = Depends(require_staff)):
    return _state(request).machine.reject(principal, order_id, payload.reason)


@router.post("/admin/orders/{order_id}/complete", response_model=OrderRecord)
def complete_order(order_id: str, request: Request, principal: Principal = Depends(require_staff)):
    return _state(request).machine.complete(principal, order_id)


@router.get("/admin/orders/{order_id}/payment-proof")
def get_payment_proof(order_id: str, request: Request, principal: Principal = Depends(require_staff)):
    state = _state(request)
    order = state.machine.get_order(principal, order_id)
    payment = order.latest_payment
    if payment is None:
        raise HTTPException(status_code=404, detail="No payment proof for this order")
    try:
        path = state.proof_storage.open_proof(payment.proof_url)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Payment proof file is missing")
    return FileResponse(path)


@router.post("/admin/test-notification", response_model=SelfTestResult)
async def send_test_notification(request: Request, principal: Principal = Depends(require_staff)):
    dispatcher = _state(request).dispatcher
    result = await dispatcher.notify_user(principal.user_id, dispatcher.self_test_message())
    if result.no_recipients:
        raise HTTPException(status_code=404, detail="No device tokens found for your account.")
    return SelfTestResult(
        sent_count=result.success_count,
        failed_count=result.failure_count,
        total_tokens=result.total_tokens,
    )
