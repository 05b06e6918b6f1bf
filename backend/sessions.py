"""
Guest dining sessions: check-in, lookup and bill requests.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import auth
import models
import pricing
from redis_client import redis_client
from schemas import GuestCheckIn, SessionResponse

logger = logging.getLogger(__name__)


def session_totals(session: models.GuestSession) -> Tuple[int, float]:
    """Order count and payable total of the session's non-cancelled orders."""
    orders = [o for o in session.orders if o.status != models.ORDER_CANCELLED]
    total = sum((o.total or 0) - (o.discount_amount or 0) for o in orders)
    return len(orders), pricing.money(total)


def session_response(session: models.GuestSession) -> SessionResponse:
    order_count, calculated_total = session_totals(session)
    return SessionResponse(
        id=session.id,
        user_id=session.user_id,
        guest_name=session.guest_name,
        guest_phone=session.guest_phone,
        table_name=session.table_name,
        num_guests=session.num_guests,
        status=session.status,
        total_amount=session.total_amount or 0,
        bill_requested=session.bill_requested,
        bill_requested_at=session.bill_requested_at,
        started_at=session.started_at,
        ended_at=session.ended_at,
        order_count=order_count,
        calculated_total=calculated_total,
    )


def _active_for_phone(db: Session, phone: str) -> Optional[models.GuestSession]:
    return db.query(models.GuestSession).filter(
        models.GuestSession.guest_phone == phone,
        models.GuestSession.status == models.SESSION_ACTIVE,
    ).first()


def _find_or_create_guest(db: Session, name: str, phone: str) -> models.User:
    users = db.query(models.User).filter(models.User.phone == phone).all()
    internal = [u for u in users if auth.normalize_role(u.role) in auth.INTERNAL_ROLES]
    if internal:
        raise HTTPException(
            status_code=400,
            detail="This phone number is registered to a staff account. Please log in instead.",
        )

    user = next((u for u in users if auth.normalize_role(u.role) == auth.ROLE_OUTSIDER), None)
    if user:
        user.name = name
        return user

    user = models.User(name=name, phone=phone, role=auth.ROLE_OUTSIDER)
    db.add(user)
    db.flush()
    return user


def check_in(db: Session, payload: GuestCheckIn) -> dict:
    """
    Start or resume the dining session of a walk-in guest.

    A phone has at most one active session: a second check-in resumes it with
    the new table and party size. Returns the user, the session, a fresh
    access token and whether the session was resumed.
    """
    user = _find_or_create_guest(db, payload.name, payload.phone)

    session = _active_for_phone(db, payload.phone)
    resumed = session is not None
    if session:
        session.table_name = payload.table_name
        session.num_guests = payload.num_guests
        session.guest_name = payload.name
    else:
        session = models.GuestSession(
            user_id=user.id,
            guest_name=payload.name,
            guest_phone=payload.phone,
            table_name=payload.table_name,
            num_guests=payload.num_guests,
            status=models.SESSION_ACTIVE,
        )
        db.add(session)

    token = auth.issue_session_token(db, user)
    auth.log_auth_action(db, user.id, "guest_check_in", {"table": payload.table_name, "resumed": resumed})

    try:
        db.commit()
    except IntegrityError:
        # Another check-in for this phone won the active slot
        db.rollback()
        logger.info("Concurrent check-in for %s, resuming the winning session", payload.phone)
        session = _active_for_phone(db, payload.phone)
        if not session:
            raise HTTPException(status_code=409, detail="Could not start a session, please retry")
        user = db.query(models.User).filter(models.User.id == session.user_id).first()
        session.table_name = payload.table_name
        session.num_guests = payload.num_guests
        token = auth.issue_session_token(db, user)
        db.commit()
        resumed = True
    except Exception:
        db.rollback()
        logger.exception("Guest check-in failed for %s", payload.phone)
        raise HTTPException(status_code=500, detail="Failed to start session")

    db.refresh(session)
    db.refresh(user)
    logger.info("Guest %s %s session %s at %s",
                user.id, "resumed" if resumed else "started", session.id, session.table_name)
    redis_client.publish_change(
        "guest_sessions", session.id, "resumed" if resumed else "started",
        user_id=user.id, status=session.status,
    )
    return {"user": user, "session": session, "token": token, "resumed": resumed}


def get_session(db: Session, session_id: int) -> models.GuestSession:
    session = db.query(models.GuestSession).filter(models.GuestSession.id == session_id).first()
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def get_active_session(db: Session, phone: Optional[str] = None,
                       user_id: Optional[int] = None) -> Optional[models.GuestSession]:
    if not phone and user_id is None:
        raise HTTPException(status_code=400, detail="Provide phone or user_id")

    query = db.query(models.GuestSession).filter(models.GuestSession.status == models.SESSION_ACTIVE)
    if phone:
        query = query.filter(models.GuestSession.guest_phone == phone)
    if user_id is not None:
        query = query.filter(models.GuestSession.user_id == user_id)
    return query.order_by(models.GuestSession.started_at.desc()).first()


def request_bill(db: Session, session_id: int, requester: models.User) -> models.GuestSession:
    """Flag the session for the kitchen. No bill is created here."""
    session = get_session(db, session_id)
    if session.status != models.SESSION_ACTIVE:
        raise HTTPException(status_code=400, detail="This dining session has ended")

    is_owner = requester.id == session.user_id
    if not is_owner and auth.normalize_role(requester.role) not in auth.KITCHEN_ROLES:
        raise HTTPException(status_code=403, detail="You do not have access to this resource")

    _, total = session_totals(session)
    session.bill_requested = True
    session.bill_requested_at = datetime.utcnow()
    session.total_amount = total

    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to request bill for session %s", session_id)
        raise HTTPException(status_code=500, detail="Failed to request bill")

    db.refresh(session)
    logger.info("Bill requested for session %s (%.2f)", session.id, total)
    redis_client.publish_change(
        "guest_sessions", session.id, "bill_requested",
        user_id=session.user_id, status=session.status,
    )
    return session


def bill_requests(db: Session):
    return db.query(models.GuestSession).filter(
        models.GuestSession.status == models.SESSION_ACTIVE,
        models.GuestSession.bill_requested.is_(True),
    ).order_by(models.GuestSession.bill_requested_at).all()
