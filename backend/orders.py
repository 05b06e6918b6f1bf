"""
Order intake, the kitchen status machine and order editing.

Every function works on the caller's SQLAlchemy session and commits its own
unit of work. Failures are raised as ``HTTPException`` and nothing is left
half written.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload

import auth
import models
import pricing
from config import ORDER_EDIT_WINDOW_SECONDS
from redis_client import redis_client
from schemas import OrderCreate, OrderEdit, OrderItemResponse, OrderResponse

logger = logging.getLogger(__name__)

# Canonical next step of every non-terminal status
NEXT_STATUS = {
    models.ORDER_PENDING: models.ORDER_PREPARING,
    models.ORDER_PREPARING: models.ORDER_READY,
    models.ORDER_READY: models.ORDER_COMPLETED,
}


def order_response(order: models.Order) -> OrderResponse:
    items = [
        OrderItemResponse(
            id=item.id,
            menu_item_id=item.menu_item_id,
            name=item.menu_item.name if item.menu_item else "Unknown Item",
            quantity=item.quantity,
            price=item.price,
            subtotal=pricing.money(item.price * item.quantity),
        )
        for item in order.items
    ]
    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        user_name=order.user.name if order.user else None,
        session_id=order.session_id,
        table_name=order.table_name,
        location_type=order.location_type,
        num_guests=order.num_guests,
        status=order.status,
        total=order.total,
        discount_percent=order.discount_percent or 0,
        discount_amount=order.discount_amount or 0,
        payable=pricing.money(order.total - (order.discount_amount or 0)),
        notes=order.notes,
        is_staff_meal=order.is_staff_meal,
        billed=order.billed,
        bill_id=order.bill_id,
        created_at=order.created_at,
        items=items,
    )


def get_order(db: Session, order_id: int) -> models.Order:
    order = (
        db.query(models.Order)
        .options(selectinload(models.Order.items).selectinload(models.OrderItem.menu_item))
        .filter(models.Order.id == order_id)
        .first()
    )
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _publish(order: models.Order, action: str):
    redis_client.publish_change(
        "orders", order.id, action,
        status=order.status, user_id=order.user_id, session_id=order.session_id,
    )


def _commit(db: Session, what: str):
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to %s", what)
        raise HTTPException(status_code=500, detail=f"Failed to {what}")


# ========== Intake ==========

def _authorize_order_owner(db: Session, user_id: int, requester: Optional[models.User],
                           session_id: Optional[int]) -> Optional[models.GuestSession]:
    """
    The caller acts for ``user_id`` either through a verified token for that
    user, or by presenting an active guest session owned by that user.
    Returns the session the order is attributed to, if any.
    """
    session = None
    if session_id is not None:
        session = db.query(models.GuestSession).filter(models.GuestSession.id == session_id).first()

    token_ok = requester is not None and requester.id == user_id
    session_ok = (
        session is not None
        and session.user_id == user_id
        and session.status == models.SESSION_ACTIVE
    )

    if not token_ok and not session_ok:
        logger.warning("Order creation blocked: unauthorized attempt for user %s", user_id)
        raise HTTPException(status_code=403, detail="Unauthorized: User mismatch or invalid session")

    if session is not None:
        if session.user_id != user_id:
            raise HTTPException(status_code=403, detail="Unauthorized: User mismatch or invalid session")
        if session.status != models.SESSION_ACTIVE:
            raise HTTPException(status_code=400, detail="This dining session has ended")
    return session


def create_order(db: Session, payload: OrderCreate, requester: Optional[models.User]) -> models.Order:
    staff_meal = payload.notes == models.REGULAR_STAFF_MEAL
    if not staff_meal and not payload.items:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: user_id, table_name, and at least one item",
        )

    session = _authorize_order_owner(db, payload.user_id, requester, payload.session_id)

    user = db.query(models.User).filter(models.User.id == payload.user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    role = auth.normalize_role(user.role)
    if staff_meal and role != auth.ROLE_STAFF:
        raise HTTPException(status_code=403, detail="Regular Staff Meal is available to STAFF only")

    lines, total = pricing.price_items(db, payload.items)

    order = models.Order(
        user_id=user.id,
        session_id=session.id if session else None,
        table_name=payload.table_name,
        location_type=payload.location_type,
        num_guests=payload.num_guests or (session.num_guests if session else None),
        notes=payload.notes,
        status=models.ORDER_PENDING,
        total=total,
    )
    for line in lines:
        order.items.append(models.OrderItem(
            menu_item_id=line["menu_item_id"],
            quantity=line["quantity"],
            price=line["price"],
        ))

    db.add(order)
    _commit(db, "create order")
    db.refresh(order)

    logger.info("Order %s created for user %s at %s, total %.2f", order.id, user.id, order.table_name, total)
    _publish(order, "created")
    return order


# ========== Customer edit ==========

def edit_order_by_customer(db: Session, order_id: int, payload: OrderEdit,
                           requester: Optional[models.User], now: Optional[datetime] = None) -> models.Order:
    """Replace the items of a just-placed order on behalf of its owner."""
    now = now or datetime.utcnow()
    order = get_order(db, order_id)

    if order.user_id != payload.user_id:
        raise HTTPException(status_code=404, detail="Order not found or does not belong to you")

    token_ok = requester is not None and requester.id == payload.user_id
    session_ok = (
        order.session is not None
        and order.session.user_id == payload.user_id
        and order.session.status == models.SESSION_ACTIVE
    )
    if not token_ok and not session_ok:
        raise HTTPException(status_code=403, detail="Unauthorized")

    if now - order.created_at > timedelta(seconds=ORDER_EDIT_WINDOW_SECONDS):
        raise HTTPException(
            status_code=403,
            detail="Edit window has expired. Orders can only be modified within 2 minutes of placement.",
        )
    newer = db.query(models.Order.id).filter(
        models.Order.user_id == order.user_id,
        models.Order.id != order.id,
        models.Order.created_at > order.created_at,
    ).first()
    if newer:
        raise HTTPException(status_code=403, detail="Only your most recent order can be edited")
    _ensure_editable(order)

    lines, _ = pricing.price_items(db, payload.items)

    order.items.clear()
    for line in lines:
        order.items.append(models.OrderItem(
            menu_item_id=line["menu_item_id"],
            quantity=line["quantity"],
            price=line["price"],
        ))
    if payload.notes is not None:
        order.notes = payload.notes
    pricing.refresh_order_totals(order)

    _commit(db, "update order items")
    db.refresh(order)
    _publish(order, "updated")
    return order


# ========== Kitchen ==========

def _ensure_editable(order: models.Order):
    if order.status in models.TERMINAL_ORDER_STATUSES:
        raise HTTPException(status_code=409, detail=f"Order is already {order.status}")
    if order.billed:
        raise HTTPException(status_code=409, detail="Order has already been billed")


def update_status(db: Session, order_id: int, new_status: str) -> models.Order:
    order = get_order(db, order_id)
    current = order.status

    if current == new_status:
        return order
    if current in models.TERMINAL_ORDER_STATUSES:
        raise HTTPException(status_code=409, detail=f"Order is already {current}")

    if new_status != models.ORDER_CANCELLED and NEXT_STATUS.get(current) != new_status:
        logger.warning("Out of order status change for order %s: %s -> %s", order.id, current, new_status)

    order.status = new_status
    _commit(db, "update order status")
    db.refresh(order)

    logger.info("Order %s status %s -> %s", order.id, current, new_status)
    _publish(order, "status")
    return order


def add_item(db: Session, order_id: int, item_id: int, quantity: int) -> models.Order:
    order = get_order(db, order_id)
    _ensure_editable(order)

    lines, _ = pricing.price_items(db, [{"item_id": item_id, "quantity": quantity}])
    line = lines[0]
    existing = next(
        (i for i in order.items if i.menu_item_id == line["menu_item_id"] and i.price == line["price"]),
        None,
    )
    if existing:
        existing.quantity += quantity
    else:
        order.items.append(models.OrderItem(
            menu_item_id=line["menu_item_id"],
            quantity=quantity,
            price=line["price"],
        ))
    pricing.refresh_order_totals(order)

    _commit(db, "add order item")
    db.refresh(order)
    _publish(order, "updated")
    return order


def _find_item(order: models.Order, order_item_id: int) -> models.OrderItem:
    item = next((i for i in order.items if i.id == order_item_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Order item not found")
    return item


def change_item_quantity(db: Session, order_id: int, order_item_id: int, quantity: int) -> models.Order:
    order = get_order(db, order_id)
    _ensure_editable(order)

    _find_item(order, order_item_id).quantity = quantity
    pricing.refresh_order_totals(order)

    _commit(db, "update order item")
    db.refresh(order)
    _publish(order, "updated")
    return order


def remove_item(db: Session, order_id: int, order_item_id: int) -> models.Order:
    order = get_order(db, order_id)
    _ensure_editable(order)

    item = _find_item(order, order_item_id)
    if len(order.items) == 1 and not order.is_staff_meal:
        raise HTTPException(status_code=400, detail="Cannot remove the last item; cancel the order instead")
    order.items.remove(item)
    pricing.refresh_order_totals(order)

    _commit(db, "remove order item")
    db.refresh(order)
    _publish(order, "updated")
    return order


def apply_discount(db: Session, order_id: int, percent: float) -> models.Order:
    order = get_order(db, order_id)
    _ensure_editable(order)

    order.discount_percent = percent
    pricing.refresh_order_totals(order)

    _commit(db, "apply discount")
    db.refresh(order)
    logger.info("Discount %.1f%% applied to order %s (%.2f)", percent, order.id, order.discount_amount)
    _publish(order, "updated")
    return order


# ========== Queries ==========

def _with_items(query):
    return query.options(
        selectinload(models.Order.items).selectinload(models.OrderItem.menu_item),
        selectinload(models.Order.user),
    )


def active_orders(db: Session) -> List[models.Order]:
    return _with_items(db.query(models.Order)).filter(
        models.Order.status.in_(models.ACTIVE_ORDER_STATUSES)
    ).order_by(models.Order.created_at, models.Order.id).all()


def completed_orders(db: Session, day: Optional[datetime] = None) -> List[models.Order]:
    day = (day or datetime.utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
    return _with_items(db.query(models.Order)).filter(
        models.Order.status == models.ORDER_COMPLETED,
        models.Order.created_at >= day,
        models.Order.created_at < day + timedelta(days=1),
    ).order_by(models.Order.created_at.desc()).all()


def orders_for_user(db: Session, user_id: int) -> List[models.Order]:
    return _with_items(db.query(models.Order)).filter(
        models.Order.user_id == user_id
    ).order_by(models.Order.created_at.desc()).all()
