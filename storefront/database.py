from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Request handlers and the expiry sweep run on separate threads; writers
        # queue on the database lock instead of failing straight away.
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


def init_db(bind: Engine) -> None:
    Base.metadata.create_all(bind=bind)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
