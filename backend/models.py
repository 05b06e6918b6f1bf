# models.py
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from database import Base

ORDER_PENDING = "pending"
ORDER_PREPARING = "preparing"
ORDER_READY = "ready"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = [ORDER_PENDING, ORDER_PREPARING, ORDER_READY, ORDER_COMPLETED, ORDER_CANCELLED]
ACTIVE_ORDER_STATUSES = [ORDER_PENDING, ORDER_PREPARING, ORDER_READY]
TERMINAL_ORDER_STATUSES = [ORDER_COMPLETED, ORDER_CANCELLED]

SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"

REGULAR_STAFF_MEAL = "REGULAR_STAFF_MEAL"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), index=True, nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False)
    pin_hash = Column(String(255), nullable=True)
    parent_name = Column(String(100), nullable=True)
    position = Column(String(100), nullable=True)

    session_token = Column(String(64), nullable=True)
    session_expires_at = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    orders = relationship("Order", back_populates="user")


class AuthLog(Base):
    __tablename__ = "auth_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    event_type = Column(String(30), nullable=False)
    status = Column(String(10), default="success", nullable=False)
    reason = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    items = relationship("MenuItem", back_populates="category")


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    price = Column(Float, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    available = Column(Boolean, default=True, nullable=False)
    image_url = Column(String(500), nullable=True)

    category = relationship("Category", back_populates="items")


class DailySpecial(Base):
    __tablename__ = "daily_specials"

    id = Column(Integer, primary_key=True, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    period = Column(String(20), nullable=False)

    menu_item = relationship("MenuItem")


class Announcement(Base):
    __tablename__ = "announcements"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    link = Column(String(500), nullable=True)
    image_url = Column(String(500), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GuestSession(Base):
    __tablename__ = "guest_sessions"
    __table_args__ = (
        # One open visit per phone
        Index(
            "uq_guest_sessions_active_phone",
            "guest_phone",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    guest_name = Column(String(100), nullable=False)
    guest_phone = Column(String(15), nullable=False, index=True)
    table_name = Column(String(50), nullable=False)
    num_guests = Column(Integer, default=1, nullable=False)
    status = Column(String(20), default=SESSION_ACTIVE, nullable=False)
    total_amount = Column(Float, default=0, nullable=False)
    bill_requested = Column(Boolean, default=False, nullable=False)
    bill_requested_at = Column(DateTime, nullable=True)
    payment_method = Column(String(20), nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    user = relationship("User")
    orders = relationship("Order", back_populates="session")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("guest_sessions.id"), nullable=True, index=True)
    table_name = Column(String(50), nullable=False)
    location_type = Column(String(30), nullable=True)
    num_guests = Column(Integer, nullable=True)
    status = Column(String(20), default=ORDER_PENDING, nullable=False, index=True)
    total = Column(Float, default=0, nullable=False)
    discount_percent = Column(Float, default=0, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    billed = Column(Boolean, default=False, nullable=False)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="orders")
    session = relationship("GuestSession", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    @property
    def is_staff_meal(self):
        return self.notes == REGULAR_STAFF_MEAL


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")


class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (UniqueConstraint("session_id", name="uq_bills_session"),)

    id = Column(Integer, primary_key=True, index=True)
    bill_number = Column(String(30), unique=True, index=True, nullable=False)
    # First order of the bill, kept for receipts
    order_id = Column(Integer, nullable=True)
    session_id = Column(Integer, ForeignKey("guest_sessions.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    items_total = Column(Float, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)
    final_total = Column(Float, nullable=False)
    payment_method = Column(String(20), default="cash", nullable=False)
    payment_status = Column(String(20), default="pending", nullable=False)
    guest_name = Column(String(100), nullable=True)
    guest_phone = Column(String(15), nullable=True)
    table_name = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    printed_at = Column(DateTime, nullable=True)

    items = relationship("BillItem", back_populates="bill", cascade="all, delete-orphan")


class BillItem(Base):
    __tablename__ = "bill_items"

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False)
    item_name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)

    bill = relationship("Bill", back_populates="items")
