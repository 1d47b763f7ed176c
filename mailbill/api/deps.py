from typing import Generator

from sqlalchemy.orm import Session

from mailbill.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped Session.

    Services only flush; the route commits once the whole operation succeeded.
    Anything left uncommitted when the request fails is rolled back here.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
