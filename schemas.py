"""
Database Schemas for the Restaurant Ordering Core

Each Pydantic model below corresponds to a MongoDB collection:
MenuItem -> "menuitem", Order -> "orders", Transaction -> "transactions",
PayoutRequest -> "payout_requests", Reservation -> "reservations".
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "delivered", "cancelled"]
PaymentMethod = Literal["online", "cash"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
PayoutStatus = Literal["pending", "approved", "paid", "rejected"]
ReservationStatus = Literal["pending", "confirmed", "cancelled", "completed"]
OrderType = Literal["delivery", "takeaway", "dine-in"]

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class Variant(BaseModel):
    name: str = Field(..., min_length=1, description="Size/option name, e.g. Large")
    price: float = Field(..., ge=0, description="Replaces the item's base price")


class Addon(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Added on top of the item/variant price")


class MenuItem(BaseModel):
    id: str
    restaurant_id: str = Field(..., description="Owning restaurant")
    name: str
    price: float = Field(..., ge=0, description="Base price")
    category: Optional[str] = None
    variants: List[Variant] = []
    addons: List[Addon] = []
    available: bool = True


class CartLine(BaseModel):
    line_id: str = Field(..., description="item id + variant name + sorted addon names")
    item_id: str
    restaurant_id: str
    name: str
    variant: Optional[Variant] = None
    addons: List[Addon] = []
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Price snapshot taken when the line was added")


class CustomerInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    email: Optional[str] = None
    address: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OrderLine(BaseModel):
    item_id: str
    name: str
    variant: Optional[Variant] = None
    addons: List[Addon] = []
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: float = Field(..., ge=0)


class Order(BaseModel):
    id: str = Field(..., description="Order id, also the checkout idempotency key")
    restaurant_id: str
    user_id: Optional[str] = Field(None, description="Customer placing the order (None for guests)")
    guest_session_id: Optional[str] = None
    is_guest: bool = True
    customer_info: CustomerInfo
    items: List[OrderLine]
    order_type: OrderType = "takeaway"
    payment_method: PaymentMethod
    special_instructions: Optional[str] = None
    subtotal: float = 0.0
    delivery_fee: float = 0.0
    tax: float = 0.0
    discount: float = Field(0.0, le=0)
    convenience_fee: float = 0.0
    total: float = 0.0
    status: OrderStatus = "pending"
    transaction_id: Optional[str] = None
    reservation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    id: str
    order_id: str
    restaurant_id: str
    customer_info: CustomerInfo
    amount: float = Field(..., ge=0)
    currency: str = "INR"
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    processing_fee: float = Field(0.0, ge=0)
    net_amount: float = 0.0
    transaction_type: Literal["online", "offline"]
    kind: Literal["charge", "refund"] = "charge"
    corrects_transaction_id: Optional[str] = Field(None, description="Original charge for correction records")
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PayoutPeriod(BaseModel):
    start_date: str = Field(..., pattern=DATE_PATTERN)
    end_date: str = Field(..., pattern=DATE_PATTERN)


class PayoutRequest(BaseModel):
    id: str
    restaurant_id: str
    amount: float = Field(..., gt=0)
    period: PayoutPeriod
    transaction_ids: List[str]
    status: PayoutStatus = "pending"
    notes: Optional[str] = None
    payment_details: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReservationCustomer(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None


class Reservation(BaseModel):
    id: str
    restaurant_id: str
    customer: ReservationCustomer
    date: str = Field(..., pattern=DATE_PATTERN)
    time: str = Field(..., pattern=TIME_PATTERN)
    guests: int = Field(..., ge=1)
    status: ReservationStatus = "pending"
    table_number: Optional[str] = None
    special_requests: Optional[str] = None
    pre_order_ids: List[str] = []
    user_id: Optional[str] = None
    is_guest: bool = True
    notes: Optional[str] = Field(None, description="Staff notes")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Table(BaseModel):
    number: str
    capacity: int = Field(..., ge=1)
