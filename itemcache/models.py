"""ORM models for the three cache tables.

`item` and `query` rows carry the payload plus fetch/expiry timestamps (epoch
seconds, indexed). `meta` rows are plain name -> JSON value records.
"""

from typing import Any

from sqlalchemy import JSON, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class ItemRow(Base):
    """Cached remote record keyed by its natural id."""

    __tablename__ = "item"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


class QueryRow(Base):
    """Cached query result keyed by a computed hash."""

    __tablename__ = "query"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


class MetaRow(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


ENTRY_TABLES = {"item": ItemRow, "query": QueryRow}
TABLES = {"item": ItemRow, "query": QueryRow, "meta": MetaRow}
