from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session


def session(engine: Engine) -> Session:
    # Handlers serialise ORM rows after the session commits; keep attributes
    # loaded so reading them does not hit a closed session.
    return Session(engine, expire_on_commit=False)


@contextmanager
def transaction(engine: Engine) -> Iterator[Session]:
    """Session wrapped in a single transaction: commit on success, roll back on error."""
    with session(engine) as s:
        with s.begin():
            yield s
