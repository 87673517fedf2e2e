from collections.abc import Generator

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from billing_sync.core.config import Settings, get_settings


def build_engine(settings: Settings) -> Engine:
    # A sync run pins one pooled connection for its advisory lock and opens
    # short sessions beside it, so the pool must allow at least two.
    connect_args = {}
    if settings.database_url.startswith("postgresql"):
        connect_args["application_name"] = settings.db_application_name
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=max(2, settings.db_pool_size),
        max_overflow=settings.db_max_overflow,
        connect_args=connect_args,
    )


engine = build_engine(get_settings())
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


def get_db() -> Generator[Session, None, None]:
    with SessionLocal() as db:
        yield db


def check_db_connection(db: Session) -> tuple[bool, str | None]:
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        return False, str(exc)
    return True, None
