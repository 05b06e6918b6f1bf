"""
Bill generation for a dining session or a single user.

Bills are computed from the line items of the orders they cover, never from
stored order totals. Orders are claimed with a conditional update so an order
lands on at most one bill even when two cashiers press "bill" at once.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

import auth
import models
import pricing
import receipts
from redis_client import redis_client
from schemas import BillItemResponse, BillResponse

logger = logging.getLogger(__name__)

BILL_PREFIX = "AC"
BILL_NUMBER_ATTEMPTS = 3


class BillNumberTaken(Exception):
    """Another bill was issued with the same number first."""


def bill_response(bill: models.Bill) -> BillResponse:
    return BillResponse(
        id=bill.id,
        bill_number=bill.bill_number,
        order_id=bill.order_id,
        session_id=bill.session_id,
        user_id=bill.user_id,
        items_total=bill.items_total,
        discount_amount=bill.discount_amount,
        final_total=bill.final_total,
        payment_method=bill.payment_method,
        payment_status=bill.payment_status,
        guest_name=bill.guest_name,
        guest_phone=bill.guest_phone,
        table_name=bill.table_name,
        created_at=bill.created_at,
        printed_at=bill.printed_at,
        items=[
            BillItemResponse(
                item_name=item.item_name,
                quantity=item.quantity,
                price=item.price,
                subtotal=item.subtotal,
            )
            for item in bill.items
        ],
    )


def next_bill_number(db: Session, now: Optional[datetime] = None) -> str:
    """``AC-YYYYMMDD-NNNN``, numbered per day."""
    now = now or datetime.utcnow()
    prefix = f"{BILL_PREFIX}-{now:%Y%m%d}-"
    latest = db.query(func.max(models.Bill.bill_number)).filter(models.Bill.bill_number.like(prefix + "%")).scalar()
    issued = int(latest.rsplit("-", 1)[1]) if latest else 0
    return f"{prefix}{issued + 1:04d}"


def consolidate_items(orders: List[models.Order]) -> List[dict]:
    """Merge the line items of ``orders`` by (name, unit price)."""
    merged = OrderedDict()
    for order in orders:
        for item in order.items:
            name = item.menu_item.name if item.menu_item else "Unknown Item"
            key = (name, pricing.money(item.price))
            merged[key] = merged.get(key, 0) + item.quantity

    return [
        {"item_name": name, "quantity": qty, "price": price, "subtotal": pricing.money(price * qty)}
        for (name, price), qty in merged.items()
    ]


def compute_totals(orders: List[models.Order]) -> Tuple[List[dict], float, float, float]:
    lines = consolidate_items(orders)
    items_total = pricing.money(sum(line["subtotal"] for line in lines))
    discount = pricing.money(sum(
        pricing.discount_for(pricing.order_subtotal(order), order.discount_percent)
        for order in orders
    ))
    return lines, items_total, discount, pricing.money(items_total - discount)


def _latest(query):
    return query.order_by(models.Bill.created_at.desc(), models.Bill.id.desc()).first()


def find_existing_bill(db: Session, session: Optional[models.GuestSession],
                       scope_orders: List[models.Order]) -> Optional[models.Bill]:
    """
    Look for the bill that already covers this scope: by session, then by
    the bill the scope's orders were stamped with, then by the guest's phone
    for bills issued since the session started.
    """
    if session is not None:
        bill = _latest(db.query(models.Bill).filter(models.Bill.session_id == session.id))
        if bill:
            return bill

    bill_ids = {o.bill_id for o in scope_orders if o.bill_id}
    if bill_ids:
        bill = _latest(db.query(models.Bill).filter(models.Bill.id.in_(bill_ids)))
        if bill:
            return bill

    if session is not None and session.guest_phone:
        return _latest(db.query(models.Bill).filter(
            models.Bill.guest_phone == session.guest_phone,
            models.Bill.created_at >= session.started_at,
        ))
    return None


def _scope_orders(db: Session, session: Optional[models.GuestSession], user_id: Optional[int]):
    query = db.query(models.Order).options(
        selectinload(models.Order.items).selectinload(models.OrderItem.menu_item)
    ).filter(models.Order.status != models.ORDER_CANCELLED)
    if session is not None:
        query = query.filter(models.Order.session_id == session.id)
    else:
        query = query.filter(models.Order.user_id == user_id)
    return query.order_by(models.Order.created_at, models.Order.id).all()


def _end_session(session: models.GuestSession, total: float, payment_method: str):
    """Close a fully billed session and sign its guest out."""
    session.status = models.SESSION_ENDED
    session.ended_at = datetime.utcnow()
    session.total_amount = total
    session.payment_method = payment_method
    owner = session.user
    if owner is not None and auth.normalize_role(owner.role) == auth.ROLE_OUTSIDER:
        auth.revoke_session(owner)


def _sessions_settled_by(db: Session, orders: List[models.Order]) -> List[models.GuestSession]:
    """Active sessions of ``orders`` with no unbilled order left."""
    settled = []
    seen = set()
    for order in orders:
        session = order.session
        if session is None or session.id in seen or session.status != models.SESSION_ACTIVE:
            continue
        seen.add(session.id)
        remaining = db.query(func.count(models.Order.id)).filter(
            models.Order.session_id == session.id,
            models.Order.status != models.ORDER_CANCELLED,
            models.Order.billed.is_(False),
        ).scalar()
        if not remaining:
            settled.append(session)
    return settled


def _publish_ended(sessions: List[models.GuestSession]):
    for session in sessions:
        redis_client.publish_change("guest_sessions", session.id, "ended", user_id=session.user_id,
                                    status=session.status)


def generate_bill(db: Session, session_id: Optional[int] = None, user_id: Optional[int] = None,
                  payment_method: str = "cash") -> Tuple[models.Bill, bool]:
    """
    Bill every unbilled, non-cancelled order of a session or of a user.

    Returns ``(bill, already_billed)``. When the scope's orders are all
    billed already the bill covering them is returned with
    ``already_billed=True``. A session ends, and its guest is signed out,
    once every one of its orders is on a bill, whichever scope billed them.
    """
    if (session_id is None) == (user_id is None):
        raise HTTPException(status_code=400, detail="Provide either session_id or user_id")

    for attempt in range(1, BILL_NUMBER_ATTEMPTS + 1):
        try:
            return _generate(db, session_id, user_id, payment_method)
        except BillNumberTaken as e:
            logger.warning("Bill number %s was issued concurrently (attempt %d of %d)",
                           e, attempt, BILL_NUMBER_ATTEMPTS)
    raise HTTPException(status_code=409, detail="Could not allocate a bill number, please retry")


def _generate(db: Session, session_id: Optional[int], user_id: Optional[int],
              payment_method: str) -> Tuple[models.Bill, bool]:
    session = None
    if session_id is not None:
        session = db.query(models.GuestSession).filter(models.GuestSession.id == session_id).first()
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        owner = session.user
        phone = session.guest_phone
    else:
        owner = db.query(models.User).filter(models.User.id == user_id).first()
        if not owner:
            raise HTTPException(status_code=404, detail="User not found")
        phone = owner.phone

    if session is not None:
        existing = _latest(db.query(models.Bill).filter(models.Bill.session_id == session.id))
        if existing:
            logger.info("Session %s already billed as %s", session.id, existing.bill_number)
            return existing, True

    all_orders = _scope_orders(db, session, user_id)
    orders = [o for o in all_orders if not o.billed]

    if not orders:
        existing = find_existing_bill(db, session, all_orders) if all_orders else None
        if not existing:
            raise HTTPException(status_code=400, detail="Nothing to bill: no unbilled orders found")
        if session is not None and session.status == models.SESSION_ACTIVE:
            _settle_billed_session(db, session, all_orders, existing)
        return existing, True

    lines, items_total, discount, final_total = compute_totals(orders)

    bill_number = next_bill_number(db)
    bill = models.Bill(
        bill_number=bill_number,
        order_id=orders[0].id,
        session_id=session.id if session else None,
        user_id=owner.id,
        items_total=items_total,
        discount_amount=discount,
        final_total=final_total,
        payment_method=payment_method,
        payment_status="paid",
        guest_name=session.guest_name if session else owner.name,
        guest_phone=phone,
        table_name=session.table_name if session else orders[-1].table_name,
    )
    for line in lines:
        bill.items.append(models.BillItem(**line))
    order_ids = [o.id for o in orders]
    scope = f"session {session_id}" if session else f"user {user_id}"

    try:
        db.add(bill)
        db.flush()

        claimed = db.query(models.Order).filter(
            models.Order.id.in_(order_ids),
            models.Order.billed.is_(False),
        ).update({"billed": True, "bill_id": bill.id}, synchronize_session=False)

        if claimed != len(order_ids):
            db.rollback()
            logger.warning("Lost billing race for %s (claimed %s of %s orders)", scope, claimed, len(order_ids))
            return _winning_bill(db, session_id, order_ids)

        if session is not None:
            ended = [session]
            _end_session(session, final_total, payment_method)
        else:
            ended = _sessions_settled_by(db, orders)
            for settled in ended:
                _end_session(settled, compute_totals(_scope_orders(db, settled, None))[3], payment_method)

        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _find_winning_bill(db, session_id, order_ids)
        if winner is not None:
            logger.warning("Bill insert conflicted for %s, %s already covers it", scope, winner.bill_number)
            return winner, True
        if db.query(models.Bill.id).filter(models.Bill.bill_number == bill_number).first():
            raise BillNumberTaken(bill_number)
        logger.error("Bill insert conflicted for %s with no winning bill", scope)
        raise HTTPException(status_code=409, detail="Billing is already in progress, please retry")
    except HTTPException:
        raise
    except Exception:
        db.rollback()
        logger.exception("Failed to generate bill")
        raise HTTPException(status_code=500, detail="Failed to generate bill")

    db.refresh(bill)
    logger.info("Bill %s generated: %d orders, total %.2f (%s)",
                bill.bill_number, len(order_ids), final_total, payment_method)

    redis_client.publish_change("bills", bill.id, "created", session_id=bill.session_id, user_id=bill.user_id)
    _publish_ended(ended)
    for order_id in order_ids:
        redis_client.publish_change("orders", order_id, "billed", bill_id=bill.id, user_id=owner.id,
                                    session_id=bill.session_id)
    return bill, False


def _settle_billed_session(db: Session, session: models.GuestSession, orders: List[models.Order],
                           bill: models.Bill):
    """End a session whose orders were all billed under another scope."""
    _end_session(session, compute_totals(orders)[3], bill.payment_method)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to end billed session %s", session.id)
        raise HTTPException(status_code=500, detail="Failed to end session")
    logger.info("Session %s ended, its orders are on bill %s", session.id, bill.bill_number)
    _publish_ended([session])


def _find_winning_bill(db: Session, session_id: Optional[int], order_ids: List[int]) -> Optional[models.Bill]:
    """The bill that claimed this session or any of ``order_ids`` first."""
    if session_id is not None:
        bill = _latest(db.query(models.Bill).filter(models.Bill.session_id == session_id))
        if bill:
            return bill
    bill_ids = {
        bill_id for (bill_id,) in db.query(models.Order.bill_id).filter(
            models.Order.id.in_(order_ids), models.Order.bill_id.isnot(None)
        )
    }
    if not bill_ids:
        return None
    return _latest(db.query(models.Bill).filter(models.Bill.id.in_(bill_ids)))


def _winning_bill(db: Session, session_id: Optional[int], order_ids: List[int]) -> Tuple[models.Bill, bool]:
    existing = _find_winning_bill(db, session_id, order_ids)
    if not existing:
        raise HTTPException(status_code=409, detail="Billing is already in progress, please retry")
    return existing, True


def get_bill(db: Session, bill_id: int) -> models.Bill:
    bill = db.query(models.Bill).options(selectinload(models.Bill.items)).filter(models.Bill.id == bill_id).first()
    if not bill:
        raise HTTPException(status_code=404, detail="Bill not found")
    return bill


def list_bills(db: Session, limit: int = 50, offset: int = 0) -> List[models.Bill]:
    return db.query(models.Bill).options(selectinload(models.Bill.items)).order_by(
        models.Bill.created_at.desc(), models.Bill.id.desc()
    ).offset(offset).limit(limit).all()


def print_bill(db: Session, bill_id: int) -> dict:
    """Render the receipt of a stored bill and stamp it as printed."""
    bill = get_bill(db, bill_id)
    payload = receipts.print_payload(bill)

    bill.printed_at = datetime.utcnow()
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to stamp printed_at on bill %s", bill_id)
        raise HTTPException(status_code=500, detail="Failed to print bill")
    db.refresh(bill)

    payload["printed_at"] = bill.printed_at
    return payload
