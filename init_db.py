# init_db.py - create the relay's tables without running migrations

import logging

from app.core.logging import setup_logging
from app.db.session import Base, engine
from app.db import models  # noqa: F401

logger = logging.getLogger("init_db")


def init():
    logger.info("Connecting to database %s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(bind=engine)
    logger.info("Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    setup_logging()
    init()
