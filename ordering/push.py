"""Push notification fan-out to registered devices.

Delivery is a side effect: nothing here can undo or fail the business event
that triggered it. Per-token outcomes are aggregated, failing tokens are
logged and left in place.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging

from ordering.errors import DeliveryPartialFailure, RecordError

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "Customer"


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    url: str

    @property
    def data(self) -> dict:
        return {"url": self.url}


@dataclass
class DispatchResult:
    total_tokens: int = 0
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: List[str] = field(default_factory=list)

    @property
    def no_recipients(self) -> bool:
        return self.total_tokens == 0

    def raise_for_failures(self) -> None:
        if self.failure_count:
            raise DeliveryPartialFailure(self.failed_tokens, self.total_tokens)


class PushGateway:
    def send(self, token: str, message: PushMessage) -> None:
        """Deliver to one token; raise on failure."""
        raise NotImplementedError


class FirebasePushGateway(PushGateway):
    APP_NAME = "ordering-push"

    def __init__(self, credentials_path: Optional[str] = None, icon: Optional[str] = None,
                 public_base_url: str = "", timeout: Optional[float] = None):
        self._credentials_path = credentials_path
        self._icon = icon
        self._public_base_url = public_base_url.rstrip("/")
        self._timeout = timeout
        self._app = None
        self._lock = threading.Lock()

    def _get_app(self):
        with self._lock:
            if self._app is None:
                try:
                    self._app = firebase_admin.get_app(self.APP_NAME)
                except ValueError:
                    cred = credentials.Certificate(self._credentials_path) if self._credentials_path else None
                    # httpTimeout ends a hung FCM call inside the SDK, freeing its worker thread
                    options = {"httpTimeout": self._timeout} if self._timeout else None
                    self._app = firebase_admin.initialize_app(cred, options=options, name=self.APP_NAME)
            return self._app

    def build(self, token: str, message: PushMessage) -> messaging.Message:
        link = f"{self._public_base_url}{message.url}" if message.url.startswith("/") else message.url
        return messaging.Message(
            token=token,
            notification=messaging.Notification(title=message.title, body=message.body),
            data=message.data,
            webpush=messaging.WebpushConfig(
                notification=messaging.WebpushNotification(icon=self._icon) if self._icon else None,
                # FCM only accepts absolute https links here
                fcm_options=messaging.WebpushFCMOptions(link=link) if link.startswith("https://") else None,
            ),
        )

    def send(self, token: str, message: PushMessage) -> None:
        messaging.send(self.build(token, message), app=self._get_app())


def unique_tokens(tokens: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for token in tokens:
        if token and token not in seen:
            seen.add(token)
            out.append(token)
    return out


class PushDispatcher:
    def __init__(self, store, gateway: PushGateway, *, concurrency: int = 10, timeout: float = 10.0,
                 staff_orders_url: str = "/profile"):
        self._store = store
        self._gateway = gateway
        self._concurrency = max(1, concurrency)
        self._timeout = timeout
        self._staff_orders_url = staff_orders_url
        # A worker stays busy until the gateway call returns, even after its
        # caller gave up, so this pool is the bound on sends in flight.
        self._executor = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="push")

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    async def _send_one(self, token: str, message: PushMessage) -> bool:
        loop = asyncio.get_running_loop()
        started = asyncio.Event()

        def deliver():
            loop.call_soon_threadsafe(started.set)
            self._gateway.send(token, message)

        try:
            future = loop.run_in_executor(self._executor, deliver)
            # the timeout covers the call itself, not the wait for a free worker
            await started.wait()
            await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Push to token %s… timed out after %ss", token[:12], self._timeout)
            return False
        except Exception as exc:
            # one bad token must not affect the others
            logger.warning("Push to token %s… failed: %s", token[:12], exc)
            return False

    async def send(self, tokens: Iterable[str], message: PushMessage) -> DispatchResult:
        targets = unique_tokens(tokens)
        if not targets:
            logger.info("No device tokens for push %r", message.title)
            return DispatchResult()

        outcomes = await asyncio.gather(*(self._send_one(t, message) for t in targets))

        result = DispatchResult(total_tokens=len(targets))
        for token, ok in zip(targets, outcomes):
            if ok:
                result.success_count += 1
            else:
                result.failure_count += 1
                result.failed_tokens.append(token)

        logger.info("Push %r: %d sent, %d failed", message.title, result.success_count, result.failure_count)
        if result.failed_tokens:
            # Not pruned: a failure may be transient.
            logger.info("Tokens that caused failures: %s", result.failed_tokens)
        return result

    async def notify_staff(self, message: PushMessage) -> DispatchResult:
        def resolve():
            return self._store.device_tokens(self._store.staff_ids())
        return await self.send(await asyncio.to_thread(resolve), message)

    async def notify_user(self, user_id: str, message: PushMessage) -> DispatchResult:
        tokens = await asyncio.to_thread(self._store.device_tokens, [user_id])
        return await self.send(tokens, message)

    def register_device(self, principal, token: str, platform: Optional[str] = "web"):
        return self._store.register_device_token(principal.user_id, token, platform)

    def new_order_message(self, order_id: str, customer_name: Optional[str]) -> PushMessage:
        return PushMessage(
            title="New Order Received! ☕",
            body=f"Order #{order_id[:8].upper()} from {customer_name or DEFAULT_CUSTOMER_NAME}",
            url=self._staff_orders_url,
        )

    def self_test_message(self) -> PushMessage:
        return PushMessage(
            title="Test Notification 🔔",
            body="This is a test message to validate your settings.",
            url=self._staff_orders_url,
        )

    async def announce_new_order(self, order_id: str, customer_name: Optional[str]) -> DispatchResult:
        try:
            result = await self.notify_staff(self.new_order_message(order_id, customer_name))
        except RecordError:
            logger.exception("Could not resolve staff devices for order %s", order_id)
            return DispatchResult()
        if result.failed_tokens:
            logger.warning("New order %s: %d of %d pushes failed: %s", order_id,
                           result.failure_count, result.total_tokens, result.failed_tokens)
        return result
