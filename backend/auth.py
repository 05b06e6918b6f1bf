import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config import ACCESS_TOKEN_EXPIRE_MINUTES, LOGIN_LOCK_MINUTES, LOGIN_MAX_FAILED_ATTEMPTS
from database import get_db

logger = logging.getLogger(__name__)

# Fall back to another scheme when bcrypt is not usable
try:
    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
    pwd_context.hash("test")
except Exception as e:
    logger.warning("bcrypt unavailable (%s), using pbkdf2_sha256", e)
    pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


ROLE_OUTSIDER = "OUTSIDER"
ROLE_RIDER = "RIDER"
ROLE_STAFF = "STAFF"
ROLE_KITCHEN = "KITCHEN"
ROLE_ADMIN = "ADMIN"

ROLES = [ROLE_OUTSIDER, ROLE_RIDER, ROLE_STAFF, ROLE_KITCHEN, ROLE_ADMIN]
INTERNAL_ROLES = [ROLE_RIDER, ROLE_STAFF, ROLE_KITCHEN, ROLE_ADMIN]
KITCHEN_ROLES = [ROLE_KITCHEN, ROLE_ADMIN]

ROLE_ALIASES = {
    "GUEST": ROLE_OUTSIDER,
    "STUDENT": ROLE_RIDER,
    "KITCHEN_MANAGER": ROLE_KITCHEN,
}


def normalize_role(raw_role: Optional[str]) -> str:
    role = (raw_role or "").strip().upper()
    return ROLE_ALIASES.get(role, role)


def get_secret_key():
    env_key = os.getenv("SECRET_KEY")
    if env_key:
        return env_key

    key_file = ".secret_key"
    if os.path.exists(key_file):
        try:
            with open(key_file, "r", encoding='utf-8') as f:
                return f.read().strip()
        except UnicodeDecodeError:
            logger.warning("Unreadable secret key file, generating a new one")
            os.remove(key_file)

    new_key = secrets.token_urlsafe(32)
    with open(key_file, "w", encoding='utf-8') as f:
        f.write(new_key)
    if os.name != 'nt':
        os.chmod(key_file, 0o600)
    logger.info("Generated a new SECRET_KEY")
    return new_key


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"


def verify_pin(plain_pin, pin_hash):
    if not plain_pin or not pin_hash:
        return False
    try:
        return pwd_context.verify(plain_pin, pin_hash)
    except ValueError:
        # Hash from an unknown scheme
        return False


def get_pin_hash(pin):
    return pwd_context.hash(pin)


def create_access_token(data: dict, expires_minutes: Optional[int] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def verify_token(token: str):
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def issue_session_token(db: Session, user) -> str:
    """Start a login session for ``user`` and return its access token.

    The token id is stored on the user row, so issuing a new token or calling
    :func:`revoke_session` invalidates every token handed out before.
    The caller commits.
    """
    jti = uuid.uuid4().hex
    now = datetime.utcnow()
    user.session_token = jti
    user.session_expires_at = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    user.last_login = now
    return create_access_token({"sub": str(user.id), "role": normalize_role(user.role), "jti": jti})


def revoke_session(user):
    user.session_token = None
    user.session_expires_at = None


def user_from_token(db: Session, token: str):
    from models import User

    payload = verify_token(token)
    if not payload:
        return None

    user_id = payload.get("sub")
    jti = payload.get("jti")
    if not user_id or not jti:
        return None

    try:
        user = db.query(User).filter(User.id == int(user_id)).first()
    except ValueError:
        return None
    if not user or user.session_token != jti:
        return None
    if user.session_expires_at and user.session_expires_at < datetime.utcnow():
        return None
    return user


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.replace("Bearer ", "", 1).strip()
    if token in ("", "null", "undefined"):
        return None
    return token


async def get_optional_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    token = _bearer_token(authorization)
    if not token:
        return None
    return user_from_token(db, token)


async def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = user_from_token(db, token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user


def require_roles(*roles):
    """Dependency factory: the current user must hold one of ``roles``."""
    async def dependency(current_user=Depends(get_current_user)):
        if normalize_role(current_user.role) not in roles:
            raise HTTPException(status_code=403, detail="You do not have access to this resource")
        return current_user
    return dependency


# ========== Lockout ==========

def is_locked(user, now: Optional[datetime] = None):
    """Return the lock expiry if ``user`` is locked out, clearing stale locks."""
    now = now or datetime.utcnow()
    if not user or not user.locked_until:
        return None
    if user.locked_until <= now:
        user.locked_until = None
        user.failed_login_attempts = 0
        return None
    return user.locked_until


def record_failed_login(db: Session, user, phone: str, reason: str = "Invalid credentials"):
    if not user:
        log_auth_action(db, None, "failed_login", {"phone": phone}, status="failed", reason=reason)
        return

    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    locked = user.failed_login_attempts >= LOGIN_MAX_FAILED_ATTEMPTS
    if locked:
        user.locked_until = datetime.utcnow() + timedelta(minutes=LOGIN_LOCK_MINUTES)
        logger.warning("Locking user %s after %s failed logins", user.id, user.failed_login_attempts)
    log_auth_action(
        db, user.id, "failed_login",
        {"attempts": user.failed_login_attempts, "locked": locked},
        status="failed", reason=reason,
    )


def clear_failed_login_attempts(user):
    user.failed_login_attempts = 0
    user.locked_until = None


def log_auth_action(db: Session, user_id, event_type: str, details: Optional[dict] = None,
                    status: str = "success", reason: Optional[str] = None):
    """Append an audit row to the caller's transaction. Never raises."""
    from models import AuthLog

    try:
        db.add(AuthLog(
            user_id=user_id,
            event_type=event_type,
            status=status,
            reason=reason,
            details=details or {},
        ))
    except Exception as e:
        logger.error("Failed to record auth event %s for user %s: %s", event_type, user_id, e)
