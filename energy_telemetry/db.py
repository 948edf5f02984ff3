from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

# registers the four tables on SQLModel.metadata
from . import models  # noqa: F401

def make_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # writers from the batch pool wait on the file lock instead of failing
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)

def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)

def session_factory(engine: Engine) -> Callable[[], Session]:
    def get_session() -> Session:
        # prevent attribute expiration so rows stay readable after commit
        return Session(engine, expire_on_commit=False)
    return get_session
