import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

import auth
import models
from config import ACCESS_TOKEN_EXPIRE_MINUTES, CORS_ORIGINS
from database import engine, get_db, init_default_admin, wait_for_db
from errors import install_error_handlers
from redis_client import rate_limit
from schemas import PinChange, UserCreate, UserLogin, UserResponse, UserUpdate, user_response

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Auth service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

require_admin = auth.require_roles(auth.ROLE_ADMIN)


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        try:
            models.Base.metadata.create_all(bind=engine)
            init_default_admin()
        except Exception:
            logger.exception("Failed to initialise the database")


@app.get("/health")
def health_check():
    return {"status": "auth service healthy"}


def _token_response(user: models.User, token: str, message: Optional[str] = None) -> dict:
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "user": user_response(user),
        "message": message,
    }


def _commit(db: Session, what: str):
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to %s", what)
        raise HTTPException(status_code=500, detail=f"Failed to {what}")


@app.post("/login")
@rate_limit(max_requests=10, window=60, key_prefix="rate_limit:login")
async def login(request: Request, credentials: UserLogin, db: Session = Depends(get_db)):
    """PIN login for RIDER, STAFF, KITCHEN and ADMIN accounts."""
    users = db.query(models.User).filter(models.User.phone == credentials.phone).all()
    user = next((u for u in users if auth.normalize_role(u.role) in auth.INTERNAL_ROLES), None)

    if not user:
        if users:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Use guest check-in for this account")
        auth.record_failed_login(db, None, credentials.phone, "Unknown phone")
        _commit(db, "record login attempt")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid phone or PIN")

    locked_until = auth.is_locked(user)
    if locked_until:
        _commit(db, "record login attempt")
        minutes_left = max(1, int((locked_until - datetime.utcnow()).total_seconds() // 60) + 1)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Account locked. Try again in {minutes_left} minutes.",
        )

    if not auth.verify_pin(credentials.pin, user.pin_hash):
        auth.record_failed_login(db, user, credentials.phone, "Invalid PIN")
        _commit(db, "record login attempt")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid phone or PIN")

    auth.clear_failed_login_attempts(user)
    token = auth.issue_session_token(db, user)
    auth.log_auth_action(db, user.id, "login", {"method": "pin", "role": auth.normalize_role(user.role)})
    _commit(db, "log in")
    db.refresh(user)

    logger.info("User %s logged in", user.id)
    return _token_response(user, token, f"Welcome back, {user.name}!")


@app.post("/refresh")
def refresh(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    token = auth.issue_session_token(db, current_user)
    auth.log_auth_action(db, current_user.id, "refresh")
    _commit(db, "refresh session")
    db.refresh(current_user)
    return _token_response(current_user, token)


@app.post("/logout")
def logout(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    auth.revoke_session(current_user)
    auth.log_auth_action(db, current_user.id, "logout")
    _commit(db, "log out")
    logger.info("User %s logged out", current_user.id)
    return {"success": True, "message": "Logged out"}


@app.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: models.User = Depends(auth.get_current_user)):
    return user_response(current_user)


# ========== User administration ==========

def _get_user(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.get("/users", response_model=List[UserResponse])
def get_users(role: Optional[str] = None, db: Session = Depends(get_db),
              current_user: models.User = Depends(require_admin)):
    users = db.query(models.User).order_by(models.User.name).all()
    if role:
        wanted = auth.normalize_role(role)
        users = [u for u in users if auth.normalize_role(u.role) == wanted]
    return [user_response(u) for u in users]


@app.post("/users", response_model=UserResponse)
def create_user(user: UserCreate, db: Session = Depends(get_db), current_user: models.User = Depends(require_admin)):
    existing = db.query(models.User).filter(models.User.phone == user.phone).all()
    if any(auth.normalize_role(u.role) in auth.INTERNAL_ROLES for u in existing):
        raise HTTPException(status_code=409, detail="Phone number already registered")

    db_user = models.User(
        name=user.name,
        phone=user.phone,
        email=user.email,
        role=user.role,
        pin_hash=auth.get_pin_hash(user.pin),
        parent_name=user.parent_name,
        position=user.position,
    )
    db.add(db_user)
    db.flush()
    auth.log_auth_action(db, current_user.id, "user_created", {"user_id": db_user.id, "role": user.role})
    _commit(db, "create user")
    db.refresh(db_user)

    logger.info("User %s (%s) created by admin %s", db_user.id, db_user.role, current_user.id)
    return user_response(db_user)


@app.put("/users/{user_id}", response_model=UserResponse)
def update_user(user_id: int, user_update: UserUpdate, db: Session = Depends(get_db),
                current_user: models.User = Depends(require_admin)):
    db_user = _get_user(db, user_id)
    changes = user_update.dict(exclude_unset=True)

    if "role" in changes and db_user.id == current_user.id and changes["role"] != auth.ROLE_ADMIN:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin role")

    for key, value in changes.items():
        setattr(db_user, key, value)
    if "role" in changes:
        # Tokens carry the role
        auth.revoke_session(db_user)

    auth.log_auth_action(db, current_user.id, "user_updated", {"user_id": db_user.id, "fields": sorted(changes)})
    _commit(db, "update user")
    db.refresh(db_user)
    return user_response(db_user)


@app.put("/users/{user_id}/pin")
def reset_pin(user_id: int, pin_change: PinChange, db: Session = Depends(get_db),
              current_user: models.User = Depends(require_admin)):
    db_user = _get_user(db, user_id)
    if auth.normalize_role(db_user.role) not in auth.INTERNAL_ROLES:
        raise HTTPException(status_code=400, detail="Guests do not have a PIN")

    db_user.pin_hash = auth.get_pin_hash(pin_change.new_pin)
    auth.clear_failed_login_attempts(db_user)
    auth.revoke_session(db_user)
    auth.log_auth_action(db, current_user.id, "pin_reset", {"user_id": db_user.id})
    _commit(db, "reset PIN")
    return {"success": True, "message": "PIN updated successfully"}


@app.delete("/users/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(require_admin)):
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")

    db_user = _get_user(db, user_id)
    if db.query(models.Order).filter(models.Order.user_id == user_id).first():
        raise HTTPException(status_code=409, detail="User has orders and cannot be deleted")
    if db.query(models.GuestSession).filter(models.GuestSession.user_id == user_id).first():
        raise HTTPException(status_code=409, detail="User has dining sessions and cannot be deleted")

    name = db_user.name
    db.delete(db_user)
    auth.log_auth_action(db, current_user.id, "user_deleted", {"user_id": user_id})
    _commit(db, "delete user")
    logger.info("User %s deleted by admin %s", user_id, current_user.id)
    return {"success": True, "message": f"User {name} deleted successfully."}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
