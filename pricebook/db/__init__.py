from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from loguru import logger

# expire_on_commit=False keeps records usable after the write transaction
# closes, e.g. when they are serialized for the response.
db = SQLAlchemy(session_options={"expire_on_commit": False})


@contextmanager
def transaction():
    """Run a unit of work on ``db.session`` and commit it atomically.

    Anything raised inside the block rolls the whole session back, so a record
    is never visible without its audit entry (or the other way round).
    """
    try:
        yield db.session
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.debug(f"Transaction rolled back: {exc!r}")
        raise
