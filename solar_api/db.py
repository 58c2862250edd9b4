from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine, Session

from .errors import StoreError
from .settings import settings


def make_engine(url: str, **kwargs) -> Engine:
    eng = create_engine(url, pool_pre_ping=True, **kwargs)
    if eng.dialect.name == "sqlite":
        # sqlite ignores ON DELETE CASCADE unless asked per connection
        @event.listens_for(eng, "connect")
        def _fk_on(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()
    return eng


engine = make_engine(settings.database_url)

def init_db(eng: Engine | None = None):
    SQLModel.metadata.create_all(eng or engine)

def get_session(eng: Engine | None = None):
    # 👇 prevent attribute expiration so simple reads after commit are safe
    return Session(eng or engine, expire_on_commit=False)


@contextmanager
def transaction(eng: Engine | None = None) -> Iterator[Session]:
    """BEGIN ... COMMIT, or ROLLBACK on any exception; the session is always closed.

    Store failures come out as StoreError, anything else (domain errors)
    propagates unchanged after the rollback.
    """
    session = get_session(eng)
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreError(f"store operation failed: {e}") from e
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
