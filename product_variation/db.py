from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from product_variation.config import settings
from product_variation.models import Base, ShopInstallation

_IS_SQLITE = settings.SHOPIFY_APP_DB_URL.startswith("sqlite")

engine: Engine = create_engine(
    settings.SHOPIFY_APP_DB_URL,
    future=True,
    connect_args={"check_same_thread": False} if _IS_SQLITE else {},
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_session() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def find_installation(session: Session, shop_domain: str) -> ShopInstallation | None:
    return session.scalars(
        select(ShopInstallation).where(ShopInstallation.shop_domain == shop_domain)
    ).first()


def find_active_installation(session: Session, shop_domain: str) -> ShopInstallation | None:
    """Installation that still holds a usable Admin API token."""
    return session.scalars(
        select(ShopInstallation).where(
            ShopInstallation.shop_domain == shop_domain,
            ShopInstallation.uninstalled_at.is_(None),
        )
    ).first()
