import re
from datetime import date as Date, datetime
from typing import List, Optional

from pydantic import BaseModel, validator

import auth
import models

PAYMENT_METHODS = ["cash", "card", "upi"]
SPECIAL_PERIODS = ["breakfast", "lunch", "dinner", "snacks"]


def sanitize_phone(raw: Optional[str]) -> str:
    """Keep the first 10 digits of ``raw``."""
    return re.sub(r"\D", "", raw or "")[:10]


def _valid_phone(v: str) -> str:
    phone = sanitize_phone(v)
    if len(phone) < 10:
        raise ValueError("Valid 10-digit phone number is required")
    return phone


def _required_text(v: Optional[str], message: str, max_length: int = 100) -> str:
    if not v or len(v.strip()) == 0:
        raise ValueError(message)
    if len(v.strip()) > max_length:
        raise ValueError(f"Cannot exceed {max_length} characters")
    return v.strip()


def _guest_count(v: int) -> int:
    if v < 1 or v > 50:
        raise ValueError("Number of guests must be between 1 and 50")
    return v


# ========== Auth / users ==========

class UserLogin(BaseModel):
    phone: str
    pin: str

    @validator("phone")
    def validate_phone(cls, v: str) -> str:
        return _valid_phone(v)

    @validator("pin")
    def validate_pin(cls, v: str) -> str:
        if not v or len(v) < 6:
            raise ValueError("PIN is required (6 digits)")
        return v


class UserCreate(BaseModel):
    name: str
    phone: str
    role: str
    pin: str
    email: Optional[str] = None
    parent_name: Optional[str] = None
    position: Optional[str] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _required_text(v, "Name is required")

    @validator("phone")
    def validate_phone(cls, v: str) -> str:
        return _valid_phone(v)

    @validator("role")
    def validate_role(cls, v: str) -> str:
        role = auth.normalize_role(v)
        if role not in auth.INTERNAL_ROLES:
            raise ValueError(f"Role must be one of {', '.join(auth.INTERNAL_ROLES)}")
        return role

    @validator("pin")
    def validate_pin(cls, v: str) -> str:
        if not v.isdigit() or len(v) != 6:
            raise ValueError("PIN must be exactly 6 digits")
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None
    parent_name: Optional[str] = None
    position: Optional[str] = None

    @validator("role")
    def validate_role(cls, v: str) -> str:
        role = auth.normalize_role(v)
        if role not in auth.INTERNAL_ROLES:
            raise ValueError(f"Role must be one of {', '.join(auth.INTERNAL_ROLES)}")
        return role


class PinChange(BaseModel):
    new_pin: str

    @validator("new_pin")
    def validate_new_pin(cls, v: str) -> str:
        if not v.isdigit() or len(v) != 6:
            raise ValueError("PIN must be exactly 6 digits")
        return v


class UserResponse(BaseModel):
    id: int
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    role: str
    parent_name: Optional[str] = None
    position: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


def user_response(user: "models.User") -> UserResponse:
    """Public view of a user, without PIN hash or session token."""
    return UserResponse(
        id=user.id,
        name=user.name,
        phone=user.phone,
        email=user.email,
        role=auth.normalize_role(user.role),
        parent_name=user.parent_name,
        position=user.position,
        last_login=user.last_login,
        created_at=user.created_at,
    )


# ========== Menu ==========

class CategoryCreate(BaseModel):
    name: str
    sort_order: int = 0

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _required_text(v, "Category name cannot be empty")


class CategoryResponse(BaseModel):
    id: int
    name: str
    sort_order: int


class MenuItemCreate(BaseModel):
    name: str
    description: Optional[str] = ""
    price: float
    category_id: Optional[int] = None
    available: bool = True
    image_url: Optional[str] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _required_text(v, "Item name cannot be empty")

    @validator("price")
    def validate_price(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Price must be greater than 0")
        if v > 1000000:
            raise ValueError("Price is too high")
        return round(v, 2)


class MenuItemResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: float
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    available: bool
    image_url: Optional[str] = None


class SpecialCreate(BaseModel):
    menu_item_id: int
    period: str
    date: Optional[Date] = None

    @validator("period")
    def validate_period(cls, v: str) -> str:
        period = (v or "").strip().lower()
        if period not in SPECIAL_PERIODS:
            raise ValueError(f"Period must be one of {', '.join(SPECIAL_PERIODS)}")
        return period

    @validator("date")
    def validate_date(cls, v: Optional[Date]) -> Optional[Date]:
        if v is not None and v < datetime.utcnow().date():
            raise ValueError("Specials cannot be created for a past date")
        return v


class SpecialResponse(BaseModel):
    id: int
    menu_item_id: int
    date: Date
    period: str
    menu_item: Optional[MenuItemResponse] = None


class AnnouncementCreate(BaseModel):
    title: str
    description: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    active: bool = True

    @validator("title")
    def validate_title(cls, v: str) -> str:
        return _required_text(v, "Title is required", max_length=200)


class AnnouncementResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    active: bool
    created_at: datetime


# ========== Orders ==========

class OrderItemCreate(BaseModel):
    item_id: int
    quantity: int

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class OrderCreate(BaseModel):
    user_id: int
    table_name: str
    items: List[OrderItemCreate] = []
    num_guests: Optional[int] = None
    location_type: Optional[str] = None
    notes: Optional[str] = None
    session_id: Optional[int] = None

    @validator("table_name")
    def validate_table_name(cls, v: str) -> str:
        return _required_text(v, "Table name is required", max_length=50)

    @validator("num_guests")
    def validate_num_guests(cls, v: Optional[int]) -> Optional[int]:
        return None if v is None else _guest_count(v)


class OrderEdit(BaseModel):
    user_id: int
    items: List[OrderItemCreate]
    notes: Optional[str] = None

    @validator("items")
    def validate_items(cls, v: List[OrderItemCreate]) -> List[OrderItemCreate]:
        if not v:
            raise ValueError("At least one item is required")
        return v


class OrderStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        status = (v or "").strip().lower()
        if status not in models.ORDER_STATUSES:
            raise ValueError(f"Status must be one of {', '.join(models.ORDER_STATUSES)}")
        return status


class OrderItemQuantity(BaseModel):
    quantity: int

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class DiscountApply(BaseModel):
    percent: float

    @validator("percent")
    def validate_percent(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError("Discount must be between 0 and 100 percent")
        return v


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: int
    name: str
    quantity: int
    price: float
    subtotal: float


class OrderResponse(BaseModel):
    id: int
    user_id: int
    user_name: Optional[str] = None
    session_id: Optional[int] = None
    table_name: str
    location_type: Optional[str] = None
    num_guests: Optional[int] = None
    status: str
    total: float
    discount_percent: float
    discount_amount: float
    payable: float
    notes: Optional[str] = None
    is_staff_meal: bool
    billed: bool
    bill_id: Optional[int] = None
    created_at: datetime
    items: List[OrderItemResponse]


class OrderCreatedResponse(OrderResponse):
    success: bool = True
    orderId: int
    message: str = "Order placed successfully"


# ========== Sessions ==========

class GuestCheckIn(BaseModel):
    name: str
    phone: str
    table_name: str
    num_guests: int = 1

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _required_text(v, "Name is required")

    @validator("phone")
    def validate_phone(cls, v: str) -> str:
        return _valid_phone(v)

    @validator("table_name")
    def validate_table_name(cls, v: str) -> str:
        return _required_text(v, "Table number is required", max_length=50)

    @validator("num_guests")
    def validate_num_guests(cls, v: int) -> int:
        return _guest_count(v)


class SessionResponse(BaseModel):
    id: int
    user_id: int
    guest_name: str
    guest_phone: str
    table_name: str
    num_guests: int
    status: str
    total_amount: float
    bill_requested: bool
    bill_requested_at: Optional[datetime] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    order_count: int
    calculated_total: float


# ========== Bills ==========

class BillGenerate(BaseModel):
    session_id: Optional[int] = None
    user_id: Optional[int] = None
    payment_method: str = "cash"

    @validator("payment_method")
    def validate_payment_method(cls, v: str) -> str:
        method = (v or "").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValueError(f"Payment method must be one of {', '.join(PAYMENT_METHODS)}")
        return method


class BillRequest(BaseModel):
    session_id: int


class BillItemResponse(BaseModel):
    item_name: str
    quantity: int
    price: float
    subtotal: float


class BillResponse(BaseModel):
    id: int
    bill_number: str
    order_id: Optional[int] = None
    session_id: Optional[int] = None
    user_id: Optional[int] = None
    items_total: float
    discount_amount: float
    final_total: float
    payment_method: str
    payment_status: str
    guest_name: Optional[str] = None
    guest_phone: Optional[str] = None
    table_name: Optional[str] = None
    created_at: datetime
    printed_at: Optional[datetime] = None
    items: List[BillItemResponse]
