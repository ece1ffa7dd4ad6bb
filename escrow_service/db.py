from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from common.settings import settings

def make_engine(url: str):
    if url.startswith("sqlite"):
        # SQLite serializes writers; the busy timeout lets concurrent transitions queue up
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

engine = make_engine(settings.sqlalchemy_url())
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

def configure_engine(url: str):
    """Rebind the session factory to a different database."""
    global engine
    engine.dispose()
    engine = make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine

def init_db():
    from escrow_service.models import Base
    Base.metadata.create_all(bind=engine)

def get_db():
    with SessionLocal() as db:
        yield db

@contextmanager
def atomic(db: Session):
    """One all-or-nothing unit of work: commit on success, roll back on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
