"""Payment proof pipeline: store the image, record it, advance the order.

Each stage has its own failure type so callers can tell a failed upload
(nothing happened) from a failed record write (an orphaned file) from a
recorded proof whose status change did not apply.
"""

import asyncio
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from ordering.auth import Principal
from ordering.errors import Conflict, InvalidProof, InvalidTransition, RecordError, StorageError
from ordering.schemas import PaymentRecord, ProofReceiptRead
from ordering.state_machine import Event

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: Optional[str]) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name
    name = _UNSAFE.sub("_", name).strip("._")
    return name or "proof"


def proof_path(order_id: str, filename: Optional[str], now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"{order_id}/{now_ms}_{safe_filename(filename)}"


class PendingSave:
    """Shared between a save running in a worker thread and the caller awaiting it.

    The worker publishes its file through :meth:`publish`; the caller calls
    :meth:`abandon` when it stops waiting. Whichever happens first wins, so
    an abandoned save never makes its file visible.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._abandoned = False
        self._published = False

    def publish(self, commit: Callable[[], None]) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            commit()
            self._published = True
            return True

    def abandon(self) -> bool:
        """Stop waiting. Returns False if the file was already published."""
        with self._lock:
            self._abandoned = True
            return not self._published


class ProofStorage:
    def save(self, path: str, data: bytes, pending: Optional[PendingSave] = None) -> None:
        raise NotImplementedError

    def open_proof(self, path: str) -> Path:
        raise NotImplementedError


class LocalProofStorage(ProofStorage):
    def __init__(self, root: Path):
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise StorageError("Invalid proof path.")
        return target

    def save(self, path: str, data: bytes, pending: Optional[PendingSave] = None) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            with open(staging, "xb") as fh:
                fh.write(data)
            # os.link refuses an existing name: a retry never overwrites an earlier upload
            if pending is None:
                os.link(staging, target)
            elif not pending.publish(lambda: os.link(staging, target)):
                logger.info("Discarded proof %s, the upload was abandoned", path)
        finally:
            staging.unlink(missing_ok=True)

    def open_proof(self, path: str) -> Path:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return target


@dataclass
class ProofReceipt:
    payment: PaymentRecord
    order_status: str
    status_advanced: bool
    message: Optional[str] = None

    def to_read(self) -> ProofReceiptRead:
        return ProofReceiptRead(
            payment_id=self.payment.id,
            proof_url=self.payment.proof_url,
            order_status=self.order_status,
            status_advanced=self.status_advanced,
            message=self.message,
        )


class PaymentProofGate:
    def __init__(self, store, state_machine, storage: ProofStorage, *,
                 max_bytes: int = 5 * 1024 * 1024, timeout: float = 10.0):
        self._store = store
        self._machine = state_machine
        self._storage = storage
        self._max_bytes = max_bytes
        self._timeout = timeout

    async def submit_proof(self, principal: Principal, order_id: str, data: bytes,
                           filename: Optional[str]) -> ProofReceipt:
        if not data:
            raise InvalidProof("No file provided")
        if len(data) > self._max_bytes:
            raise InvalidProof(f"File is larger than {self._max_bytes // (1024 * 1024)} MB")

        order = await asyncio.to_thread(self._machine.check_allowed, Event.UPLOAD_PROOF, principal, order_id)

        # 1. artifact
        path = proof_path(order.id, filename)
        pending = PendingSave()
        try:
            await asyncio.wait_for(asyncio.to_thread(self._storage.save, path, data, pending),
                                   timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            if pending.abandon():
                logger.error("Proof upload for order %s timed out after %ss", order_id, self._timeout)
                raise StorageError() from exc
            logger.warning("Proof upload for order %s finished as it timed out, keeping %s", order_id, path)
        except OSError as exc:
            logger.error("Proof upload for order %s failed: %s", order_id, exc)
            raise StorageError() from exc

        # 2. record
        try:
            payment = await asyncio.to_thread(self._store.insert_payment, order_id, path)
        except RecordError:
            logger.error("Payment record for order %s failed, artifact %s is orphaned", order_id, path)
            raise RecordError("Failed to save payment record. Your upload may need to be repeated.")

        # 3. status
        try:
            updated = await asyncio.to_thread(self._machine.upload_proof, principal, order_id)
        except (Conflict, InvalidTransition) as exc:
            logger.warning("Proof %s recorded for order %s but status unchanged: %s",
                           payment.id, order_id, exc.message)
            current = await asyncio.to_thread(self._store.get_order, order_id)
            return ProofReceipt(
                payment=payment,
                order_status=current.order_status.value if current else order.order_status.value,
                status_advanced=False,
                message=f"Payment proof received, but the order status was not updated: {exc.message}",
            )

        return ProofReceipt(payment=payment, order_status=updated.order_status.value, status_advanced=True)
