import os
import sys
import tempfile
from pathlib import Path

# settings creates its directories at import time; keep them out of the real profile
os.environ.setdefault("TASKFLOW_DATA_DIR", tempfile.mkdtemp(prefix="taskflow-tests-"))

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from storage.db import init_db


@pytest.fixture()
def engine():
    # one shared connection so worker threads see the same in-memory database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture()
def session_factory(engine):
    def factory():
        return Session(engine)

    return factory
