import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from ordering.config import Settings
from ordering.database import Base, make_engine, make_session_factory
from ordering.errors import OrderError
from ordering.payment_proof import LocalProofStorage, PaymentProofGate, ProofStorage
from ordering.push import FirebasePushGateway, PushDispatcher, PushGateway
from ordering.realtime import RealtimeNotifier
from ordering.realtime_routes import ws_router
from ordering.routes import router
from ordering.schemas import OrderWebhookEvent
from ordering.state_machine import OrderStateMachine
from ordering.store import OrderStore
from ordering.store_hours import StoreHoursGate

logger = logging.getLogger(__name__)

webhook_router = APIRouter()


def _customer_name(store, customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    customer = store.get_customer(str(customer_id))
    return customer.name if customer else None


@webhook_router.post("/webhooks/orders")
async def order_webhook(
    event: OrderWebhookEvent,
    request: Request,
    x_webhook_secret: Optional[str] = Header(None),
):
    state = request.app.state
    secret = state.settings.webhook_secret
    if secret and not hmac.compare_digest((x_webhook_secret or "").encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid signature")

    if event.table_name != "orders" or event.event_type.upper() != "INSERT":
        return {"message": "Ignored event"}

    record = event.record or {}
    order_id = str(record.get("id") or "")
    if not order_id:
        raise HTTPException(status_code=400, detail="Invalid payload")

    customer_name = record.get("customer_name") or await asyncio.to_thread(
        _customer_name, state.store, record.get("customer_id")
    )
    result = await state.dispatcher.announce_new_order(order_id, customer_name)
    return {"success": True, "sent_count": result.success_count}


async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def create_app(
    settings: Optional[Settings] = None,
    *,
    push_gateway: Optional[PushGateway] = None,
    proof_storage: Optional[ProofStorage] = None,
) -> FastAPI:
    settings = settings or Settings.load()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )

    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    store = OrderStore(make_session_factory(engine))

    notifier = RealtimeNotifier(queue_size=settings.realtime_queue_size)
    store_hours = StoreHoursGate(store)
    machine = OrderStateMachine(store, store_hours, notifier)
    proof_storage = proof_storage or LocalProofStorage(settings.proof_storage_dir)
    proof_gate = PaymentProofGate(
        store, machine, proof_storage,
        max_bytes=settings.max_proof_bytes,
        timeout=settings.upload_timeout,
    )
    dispatcher = PushDispatcher(
        store,
        push_gateway or FirebasePushGateway(
            credentials_path=settings.firebase_credentials,
            icon=settings.push_icon,
            public_base_url=settings.public_base_url,
            timeout=settings.push_timeout,
        ),
        concurrency=settings.push_concurrency,
        timeout=settings.push_timeout,
        staff_orders_url=settings.staff_orders_url,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        dispatcher.close()

    app = FastAPI(title="Order Lifecycle Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.notifier = notifier
    app.state.store_hours = store_hours
    app.state.machine = machine
    app.state.proof_storage = proof_storage
    app.state.proof_gate = proof_gate
    app.state.dispatcher = dispatcher

    app.add_exception_handler(OrderError, order_error_handler)
    app.include_router(router)
    app.include_router(ws_router)
    app.include_router(webhook_router)

    if not settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set: /webhooks/orders accepts unauthenticated calls")
    logger.info("Order service ready (push on create: %s)", settings.push_on_order_create)
    return app
