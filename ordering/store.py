"""Transactional access to orders, payments, device tokens and settings.

Every read is validated into a schema from ``ordering.schemas`` before it
leaves this module, so callers never touch ORM objects or detached sessions.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from ordering.database import session_scope
from ordering.errors import InvalidOrder, RecordError
from ordering.models import (
    CatalogItem,
    Customer,
    DeviceToken,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Role,
    StoreSetting,
    utcnow,
)
from ordering.schemas import (
    CustomerRecord,
    DeviceTokenRecord,
    OrderDetail,
    OrderRecord,
    PaymentRecord,
)

logger = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Record store failure: %s", exc)
            raise RecordError() from exc

    # ----- Orders -----

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        with self._session() as session:
            order = session.get(Order, order_id)
            return OrderRecord.model_validate(order) if order else None

    def get_order_detail(self, order_id: str) -> Optional[OrderDetail]:
        with self._session() as session:
            order = session.execute(
                select(Order)
                .options(selectinload(Order.items), selectinload(Order.payments))
                .where(Order.id == order_id)
            ).scalar_one_or_none()
            return OrderDetail.model_validate(order) if order else None

    def list_orders(self, customer_id: Optional[str] = None) -> List[OrderDetail]:
        query = (
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.payments))
            .order_by(Order.created_at.desc())
        )
        if customer_id is not None:
            query = query.where(Order.customer_id == customer_id)
        with self._session() as session:
            return [OrderDetail.model_validate(o) for o in session.execute(query).scalars()]

    def insert_order(
        self,
        *,
        customer_id: str,
        items: Sequence[Tuple[str, int]],
        payment_method: PaymentMethod,
        delivery_address: str,
        postage: int,
        initial_status: OrderStatus,
    ) -> OrderDetail:
        """Insert an order and its items in one transaction.

        Unit prices are read from the catalog inside the same transaction and
        copied onto the items, so later catalog edits never touch old orders.
        """
        with self._session() as session:
            wanted = {catalog_id for catalog_id, _ in items}
            catalog = {
                c.id: c
                for c in session.execute(select(CatalogItem).where(CatalogItem.id.in_(sorted(wanted)))).scalars()
            }
            missing = sorted(i for i in wanted if i not in catalog or not catalog[i].is_available)
            if missing:
                raise InvalidOrder(f"Unavailable items: {', '.join(missing)}")

            order = Order(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                total_price=sum(catalog[cid].price * qty for cid, qty in items),
                postage=postage,
                payment_method=payment_method.value,
                delivery_address=delivery_address,
                order_status=initial_status.value,
                version=1,
            )
            session.add(order)
            session.flush()

            for catalog_id, quantity in items:
                session.add(OrderItem(
                    order_id=order.id,
                    catalog_item_id=catalog_id,
                    quantity=quantity,
                    price=catalog[catalog_id].price,
                ))
            session.flush()
            session.refresh(order)
            return OrderDetail.model_validate(order)

    def transition(
        self,
        order_id: str,
        *,
        expected: OrderStatus,
        target: OrderStatus,
        rejection_reason: Optional[str] = None,
        require_no_payment: bool = False,
        settle_payments: Optional[PaymentStatus] = None,
    ) -> Optional[OrderRecord]:
        """Conditional write: move ``expected`` to ``target`` or do nothing.

        Returns the updated order, or ``None`` when the predicate matched no
        row (another writer got there first, or a payment appeared while
        ``require_no_payment`` was set).
        """
        values = {
            "order_status": target.value,
            "version": Order.version + 1,
            "updated_at": utcnow(),
        }
        if rejection_reason is not None:
            values["rejection_reason"] = rejection_reason

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.order_status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if require_no_payment:
            stmt = stmt.where(~select(Payment.id).where(Payment.order_id == order_id).exists())

        with self._session() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                return None

            if settle_payments is not None:
                session.execute(
                    update(Payment)
                    .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
                    .values(
                        status=settle_payments.value,
                        confirmed_at=utcnow() if settle_payments == PaymentStatus.CONFIRMED else None,
                    )
                    .execution_options(synchronize_session=False)
                )
            order = session.get(Order, order_id)
            session.refresh(order)
            return OrderRecord.model_validate(order)

    # ----- Payments -----

    def has_payment(self, order_id: str) -> bool:
        with self._session() as session:
            return session.execute(
                select(Payment.id).where(Payment.order_id == order_id).limit(1)
            ).first() is not None

    def insert_payment(self, order_id: str, proof_url: str) -> PaymentRecord:
        with self._session() as session:
            payment = Payment(order_id=order_id, proof_url=proof_url, status=PaymentStatus.PENDING.value)
            session.add(payment)
            session.flush()
            session.refresh(payment)
            return PaymentRecord.model_validate(payment)

    def latest_payment(self, order_id: str) -> Optional[PaymentRecord]:
        with self._session() as session:
            payment = session.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return PaymentRecord.model_validate(payment) if payment else None

    # ----- Customers -----

    def get_customer(self, user_id: str) -> Optional[CustomerRecord]:
        with self._session() as session:
            customer = session.get(Customer, user_id)
            return CustomerRecord.model_validate(customer) if customer else None

    def staff_ids(self) -> List[str]:
        with self._session() as session:
            return list(session.execute(
                select(Customer.id).where(Customer.role == Role.STAFF.value)
            ).scalars())

    # ----- Device tokens -----

    def device_tokens(self, user_ids: Iterable[str]) -> List[str]:
        user_ids = list(user_ids)
        if not user_ids:
            return []
        with self._session() as session:
            return list(session.execute(
                select(DeviceToken.token)
                .where(DeviceToken.user_id.in_(user_ids))
                .order_by(DeviceToken.id)
            ).scalars())

    def register_device_token(self, user_id: str, token: str, platform: Optional[str]) -> DeviceTokenRecord:
        """Upsert on the token value; a token seen under another user moves to ``user_id``."""
        with self._session() as session:
            row = session.execute(
                select(DeviceToken).where(DeviceToken.token == token)
            ).scalar_one_or_none()
            if row is None:
                row = DeviceToken(user_id=user_id, token=token, platform=platform)
                session.add(row)
            else:
                if row.user_id != user_id:
                    logger.info("Device token moved from user %s to %s", row.user_id, user_id)
                row.user_id = user_id
                row.platform = platform
                row.updated_at = utcnow()
            session.flush()
            return DeviceTokenRecord.model_validate(row)

    # ----- Settings -----

    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as session:
            setting = session.get(StoreSetting, key)
            return setting.value if setting else None

    def set_setting(self, key: str, value: str) -> None:
        with self._session() as session:
            setting = session.get(StoreSetting, key)
            if setting is None:
                session.add(StoreSetting(key=key, value=value))
            else:
                setting.value = value
                setting.updated_at = utcnow()
