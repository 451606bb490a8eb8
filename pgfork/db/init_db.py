from __future__ import annotations

from sqlalchemy import Engine, text
from sqlalchemy.orm import Session, sessionmaker

from pgfork.db.models import Base
from pgfork.db.session import get_engine


def initialize_state_schema(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()


def initialize_session_factory(session_factory: sessionmaker[Session]) -> None:
    bind = session_factory.kw["bind"]
    initialize_state_schema(bind)


def initialize_database() -> None:
    initialize_state_schema(get_engine())
