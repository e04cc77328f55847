from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ordering.models import OrderStatus, PaymentMethod, PaymentStatus, Role


# ----- Store boundary -----

class CustomerRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: Optional[str] = None
    role: Role = Role.CUSTOMER


class OrderRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    total_price: int
    postage: int
    payment_method: PaymentMethod
    delivery_address: str
    order_status: OrderStatus
    rejection_reason: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def short_id(self) -> str:
        return self.id[:8].upper()

    @property
    def grand_total(self) -> int:
        return self.total_price + self.postage


class OrderItemRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    catalog_item_id: str
    quantity: int
    price: int


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    proof_url: str
    status: PaymentStatus
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class OrderDetail(OrderRecord):
    items: List[OrderItemRecord] = []
    payments: List[PaymentRecord] = []

    @property
    def latest_payment(self) -> Optional[PaymentRecord]:
        # re-upload adds rows; the newest one wins
        return max(self.payments, key=lambda p: (p.created_at, p.id), default=None)


class DeviceTokenRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    token: str
    platform: Optional[str] = None
    updated_at: datetime


# ----- Requests -----

class OrderItemRequest(BaseModel):
    catalog_item_id: str
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest]
    payment_method: PaymentMethod
    delivery_address: str = Field(min_length=1)
    postage: int = Field(default=0, ge=0)


class RejectRequest(BaseModel):
    reason: str


class StoreStatus(BaseModel):
    is_open: bool


class DeviceTokenRequest(BaseModel):
    token: str = Field(min_length=1)
    platform: str = "web"


class OrderWebhookEvent(BaseModel):
    event_type: str = Field(validation_alias=AliasChoices("event_type", "type"))
    table_name: str = Field(validation_alias=AliasChoices("table_name", "table"))
    record: Optional[Dict[str, Any]] = None


# ----- Responses -----

class ProofReceiptRead(BaseModel):
    payment_id: int
    proof_url: str
    order_status: OrderStatus
    status_advanced: bool
    message: Optional[str] = None


class SelfTestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sent_count: int = Field(serialization_alias="sentCount")
    failed_count: int = Field(serialization_alias="failedCount")
    total_tokens: int = Field(serialization_alias="totalTokens")
