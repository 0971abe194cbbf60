import logging
import os
import time

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .db import Base, engine
from .models import User

logger = logging.getLogger(__name__)

DEFAULT_SEED_HANDLES = "sandbox-a,sandbox-b"


def seed_handles() -> list[str]:
    raw = os.environ.get("SEED_HANDLES", DEFAULT_SEED_HANDLES)
    return [handle.strip().lower() for handle in raw.split(",") if handle.strip()]


def init_db():
    # Wait for the database to accept connections
    for attempt in range(30):  # ~30 seconds
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            logger.info("Database not ready (attempt %d), retrying", attempt + 1)
            time.sleep(1)
    else:
        raise RuntimeError("Database not ready after 30 seconds")

    Base.metadata.create_all(bind=engine)


def seed(db: Session):
    existing = set(db.execute(select(User.handle)).scalars().all())
    created = 0
    for handle in seed_handles():
        if handle in existing:
            continue
        db.add(User(handle=handle))
        created += 1
    db.commit()
    if created:
        logger.info("Seeded %d sandbox users", created)
