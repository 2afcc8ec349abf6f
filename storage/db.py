# taskflow/storage/db.py
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.task  # noqa: F401
import models.tag  # noqa: F401
import models.task_history  # noqa: F401
import models.integration  # noqa: F401
from storage import migrations


SessionFactory = Callable[[], Session]

_engine = create_engine(f"sqlite:///{DB_PATH.as_posix()}", echo=False)


def init_db(engine: Optional[Engine] = None) -> None:
    target = engine or _engine
    if target is _engine:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(target)
    migrations.run_all(target)


def get_engine() -> Engine:
    return _engine


def get_session() -> Session:
    return Session(_engine)


def make_session_factory(engine: Optional[Engine] = None) -> SessionFactory:
    target = engine or _engine

    def _factory() -> Session:
        return Session(target)

    return _factory


__all__ = ["SessionFactory", "get_engine", "get_session", "init_db", "make_session_factory"]
