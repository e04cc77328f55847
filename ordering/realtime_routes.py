import asyncio
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from jose import JWTError

from ordering.auth import Principal, decode_subject, resolve_principal
from ordering.errors import OrderError

ws_router = APIRouter()

POLICY_VIOLATION = 1008


def _authenticate(websocket: WebSocket, token: Optional[str]) -> Optional[Principal]:
    settings = websocket.app.state.settings
    if not token:
        return None
    try:
        user_id = decode_subject(token, settings.jwt_secret, settings.jwt_algorithm)
    except JWTError:
        return None
    return resolve_principal(websocket.app.state.store, user_id)


async def _pump(websocket: WebSocket, subscription) -> None:
    async def watch_client():
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            subscription.close()

    watcher = asyncio.create_task(watch_client())
    try:
        async for event in subscription:
            await websocket.send_json(event.to_message())
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        subscription.close()


@ws_router.websocket("/ws/orders/{order_id}")
async def order_updates(websocket: WebSocket, order_id: str, token: Optional[str] = None):
    state = websocket.app.state
    principal = await asyncio.to_thread(_authenticate, websocket, token)
    if principal is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    # subscribe before the snapshot read so nothing committed in between is lost
    subscription = state.notifier.subscribe_order(order_id)
    try:
        snapshot = await asyncio.to_thread(state.machine.get_order, principal, order_id)
    except OrderError:
        subscription.close()
        await websocket.close(code=POLICY_VIOLATION)
        return

    subscription.mark_seen(snapshot.id, snapshot.version)
    await websocket.accept()
    await websocket.send_json({"type": "snapshot", "order": snapshot.model_dump(mode="json")})
    await _pump(websocket, subscription)


@ws_router.websocket("/ws/admin/orders")
async def all_order_updates(websocket: WebSocket, token: Optional[str] = None):
    state = websocket.app.state
    principal = await asyncio.to_thread(_authenticate, websocket, token)
    if principal is None or not principal.is_staff:
        await websocket.close(code=POLICY_VIOLATION)
        return

    subscription = state.notifier.subscribe_all()
    try:
        orders = await asyncio.to_thread(state.machine.list_all_orders, principal)
    except OrderError:
        subscription.close()
        await websocket.close(code=POLICY_VIOLATION)
        return

    for order in orders:
        subscription.mark_seen(order.id, order.version)
    await websocket.accept()
    await websocket.send_json({"type": "snapshot", "orders": [o.model_dump(mode="json") for o in orders]})
    await _pump(websocket, subscription)
