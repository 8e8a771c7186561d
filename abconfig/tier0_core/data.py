"""
abconfig.tier0_core.data
──────────────────────────
ORM tables for experiments, condition sets and the config-change log,
plus the DB connection lifecycle and transaction boundaries.

Minimal stack: SQLAlchemy 2.x
Configure via: ABCONFIG_DATABASE_URL, ABCONFIG_DATABASE_ECHO
"""
from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from abconfig.tier0_core.config import get_settings


# ── Base model ────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """All ORM models inherit from this base."""
    pass


class ExperimentRow(Base):
    __tablename__ = "abconfig_experiment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    shortname: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adminenabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    numoffset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    conditions: Mapped[list[ConditionRow]] = relationship(
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="ConditionRow.id",
    )


class ConditionRow(Base):
    __tablename__ = "abconfig_condition"
    __table_args__ = (UniqueConstraint("experiment_id", "condset"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_id: Mapped[int] = mapped_column(
        ForeignKey("abconfig_experiment.id", ondelete="CASCADE"), nullable=False
    )
    condset: Mapped[str] = mapped_column(String(255), nullable=False)
    ipwhitelist: Mapped[str] = mapped_column(Text, nullable=False, default="")
    commands: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    experiment: Mapped[ExperimentRow] = relationship(back_populates="conditions")


class ConfigLogRow(Base):
    """Append-only. Never update or delete these."""
    __tablename__ = "abconfig_config_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    oldvalue: Mapped[str] = mapped_column(Text, nullable=False, default="")
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    plugin: Mapped[str] = mapped_column(String(255), nullable=False)
    experiment: Mapped[str] = mapped_column(String(255), nullable=False, default="")


# ── Engine / session factory ──────────────────────────────────────────────────

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Return the singleton engine. Created on first call, tables included."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.database_url

        kwargs: dict[str, Any] = {"echo": settings.database_echo}

        # In-memory SQLite must share one connection or every session sees an empty DB
        if url.startswith("sqlite") and ":memory:" in url:
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool

        _engine = create_engine(url, **kwargs)
        Base.metadata.create_all(_engine)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Return the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager that yields a transactional session.
    Commits on clean exit, rolls back on exception, always closes.

    Usage:
        with get_session() as session:
            row = session.scalar(select(ExperimentRow).where(ExperimentRow.id == eid))
    """
    factory = get_session_factory()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def dispose_engine() -> None:
    """Dispose the engine - call on application shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
        _engine = None
        _session_factory = None


def _reset() -> None:
    """For tests - reset engine and session factory."""
    dispose_engine()
