"""Database configuration for the local persistent store."""

from sqlmodel import SQLModel, create_engine

from exam_portal.config import settings

# echo=False to avoid noisy logs; toggle for debugging
engine = create_engine(
    settings.database_url, echo=False, connect_args={"check_same_thread": False}
)


def create_db_and_tables() -> None:
    """Create database tables based on SQLModel metadata."""
    from exam_portal import models  # noqa: F401  (registers the tables)

    SQLModel.metadata.create_all(engine)
