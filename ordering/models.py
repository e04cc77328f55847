import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ordering.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    WAITING_PAYMENT = "waiting_payment"
    WAITING_ADMIN_CONFIRMATION = "waiting_admin_confirmation"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.REJECTED, OrderStatus.CANCELLED})


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    QRIS = "qris"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "admin"


STORE_OPEN_KEY = "is_store_open"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(64), primary_key=True)              # auth subject
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    role = Column(String(16), nullable=False, default=Role.CUSTOMER.value)


class CatalogItem(Base):
    __tablename__ = "catalog_items"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    price = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(64), ForeignKey("customers.id"), nullable=False, index=True)
    total_price = Column(Integer, nullable=False)          # item subtotal
    postage = Column(Integer, nullable=False, default=0)   # delivery fee
    payment_method = Column(String(8), nullable=False)
    delivery_address = Column(Text, nullable=False)
    order_status = Column(String(32), nullable=False, index=True)
    rejection_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    catalog_item_id = Column(String(64), ForeignKey("catalog_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)                # snapshot of price at order time

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    proof_url = Column(String(512), nullable=False)        # storage path, not a public URL
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="payments")


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("customers.id"), nullable=False, index=True)
    token = Column(String(512), nullable=False, unique=True)
    platform = Column(String(32), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class StoreSetting(Base):
    __tablename__ = "store_settings"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
