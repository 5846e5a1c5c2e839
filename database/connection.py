from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from database.base import Base
from core.config import settings


def build_engine(url: str, echo: bool = False, **engine_kwargs):
    """Create an engine; SQLite connections get foreign keys and a busy timeout."""
    is_sqlite = url.startswith("sqlite")
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
        **engine_kwargs
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


# Create database engine
engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create all tables
def create_tables(bind=None):
    # Models must be imported so they register on Base.metadata
    from models import user, partner, delivery, payment, event  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)

# Dependency to get database session
def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
