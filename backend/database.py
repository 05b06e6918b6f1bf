import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import SQLALCHEMY_DATABASE_URL, DEFAULT_ADMIN_PHONE, DEFAULT_ADMIN_PIN

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        # In-memory databases must share one connection across threads
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "pool_recycle": 300}


def wait_for_db(max_retries=30, retry_interval=2):
    logger.info("Waiting for the database...")

    for attempt in range(max_retries):
        try:
            temp_engine = create_engine(SQLALCHEMY_DATABASE_URL, **_engine_options(SQLALCHEMY_DATABASE_URL))
            with temp_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is available")
            temp_engine.dispose()
            return True
        except OperationalError as e:
            logger.warning("Attempt %s/%s: database not available yet: %s", attempt + 1, max_retries, e)
            if attempt < max_retries - 1:
                time.sleep(retry_interval)

    logger.error("Could not connect to the database after %s attempts", max_retries)
    return False


engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    echo=False,
    **_engine_options(SQLALCHEMY_DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_default_admin():
    """Seed the first ADMIN account from DEFAULT_ADMIN_PHONE / DEFAULT_ADMIN_PIN."""
    from models import User
    import auth

    if not DEFAULT_ADMIN_PHONE or not DEFAULT_ADMIN_PIN:
        logger.info("DEFAULT_ADMIN_PHONE/DEFAULT_ADMIN_PIN not set, skipping admin seeding")
        return

    db = SessionLocal()
    try:
        admin = db.query(User).filter(User.role == auth.ROLE_ADMIN).first()
        if admin:
            logger.info("Admin account already present (id=%s)", admin.id)
            return

        admin = User(
            name="Administrator",
            phone=DEFAULT_ADMIN_PHONE,
            role=auth.ROLE_ADMIN,
            pin_hash=auth.get_pin_hash(DEFAULT_ADMIN_PIN),
        )
        db.add(admin)
        db.commit()
        logger.info("Default admin account created for phone %s", DEFAULT_ADMIN_PHONE)
    except Exception:
        logger.exception("Failed to seed the default admin account")
        db.rollback()
        raise
    finally:
        db.close()
