import os

os.environ.setdefault("BALANCES_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("BALANCES_SYNC_ENABLED", "false")
os.environ.setdefault("BALANCES_TIMEZONE", "UTC")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database import Base  # noqa: E402
import models  # noqa: E402,F401


def make_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def session_factory():
    engine = make_engine()
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def session(session_factory) -> Session:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
