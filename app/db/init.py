"""Initialize database tables."""
from typing import Optional
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel
import logging

from app import models  # noqa: F401  (registers the tables on SQLModel.metadata)
from app.db.config import engine as default_engine

logger = logging.getLogger(__name__)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables in the database."""
    target = bind or default_engine
    logger.info("Creating messaging tables")
    SQLModel.metadata.create_all(target)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
    print("Database tables created successfully.")
