"""SQLAlchemy repository for the inventory ledger.

Two tables: ``stock`` maps SKUs to their available quantity and
``applied_decrements`` records every dedupe key that has already been
applied. A decrement inserts its dedupe row and runs a conditional
``UPDATE ... WHERE quantity >= :qty`` in the same transaction, so it is
applied at most once per key and can never drive stock below zero.

The database URL comes from ``INVENTORY_DATABASE_URL`` (or ``DATABASE_URL``),
defaulting to the compose Postgres instance.
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = (
    os.getenv("INVENTORY_DATABASE_URL")
    or os.getenv("DATABASE_URL")
    or f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)
engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)


class Base(DeclarativeBase):
    pass


class Stock(Base):
    """Available stock for a product.

    Attributes:
        sku: Product SKU, primary key.
        quantity: Units on hand; never negative.
    """

    __tablename__ = "stock"
    sku = mapped_column(String(64), primary_key=True)
    quantity = mapped_column(Integer, nullable=False, default=0)


class AppliedDecrement(Base):
    """A decrement that has been applied, keyed by its dedupe key."""

    __tablename__ = "applied_decrements"
    dedupe_key = mapped_column(String(200), primary_key=True)
    sku = mapped_column(String(64), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    applied_at = mapped_column(DateTime(timezone=True), nullable=False)


class InsufficientStock(Exception):
    """Raised when a decrement would make stock negative."""

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__("INSUFFICIENT_STOCK")
        self.sku = sku
        self.requested = requested
        self.available = available


@dataclass(frozen=True)
class DecrementResult:
    """Outcome of a successful decrement.

    Attributes:
        replayed: True when the dedupe key had already been applied and
            nothing changed.
        remaining: Units left after the call.
    """

    replayed: bool
    remaining: int


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Yield a SQLAlchemy session that is closed on exit."""
    with Session(engine) as s:
        yield s


class InventoryRepo:
    """Stock lookups and idempotent conditional decrements."""

    def get(self, sku: str) -> int:
        """Current quantity for ``sku`` (0 when unknown)."""
        with get_session() as s:
            obj = s.get(Stock, sku)
            return obj.quantity if obj else 0

    def upsert(self, sku: str, quantity: int) -> None:
        """Set the quantity for ``sku``, creating the row if needed."""
        if quantity < 0:
            raise ValueError("quantity must not be negative")
        with get_session() as s:
            obj = s.get(Stock, sku) or Stock(sku=sku, quantity=0)
            obj.quantity = quantity
            s.merge(obj)
            s.commit()

    def decrement(self, sku: str, quantity: int, dedupe_key: str) -> DecrementResult:
        """Subtract ``quantity`` from ``sku`` once per ``dedupe_key``.

        Raises:
            InsufficientStock: When fewer than ``quantity`` units are on hand.
                Nothing is written in that case, so a later retry with the
                same key is evaluated afresh.
        """
        with get_session() as s:
            try:
                s.add(
                    AppliedDecrement(
                        dedupe_key=dedupe_key,
                        sku=sku,
                        quantity=quantity,
                        applied_at=datetime.now(timezone.utc),
                    )
                )
                s.flush()
            except IntegrityError:
                s.rollback()
                return DecrementResult(replayed=True, remaining=self._quantity(s, sku))

            res = s.execute(
                update(Stock)
                .where(Stock.sku == sku, Stock.quantity >= quantity)
                .values(quantity=Stock.quantity - quantity)
            )
            if res.rowcount != 1:
                s.rollback()
                raise InsufficientStock(sku, quantity, self._quantity(s, sku))
            s.commit()
            return DecrementResult(replayed=False, remaining=self._quantity(s, sku))

    @staticmethod
    def _quantity(s: Session, sku: str) -> int:
        value = s.execute(select(Stock.quantity).where(Stock.sku == sku)).scalar_one_or_none()
        return value or 0
