"""
Database Models for dbretire
============================

SQLAlchemy models for the state database: migration records, persisted
access events and alert history. The target database being deprecated
has no models here; it is only reached through the schema repository.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Float, Index, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MigrationRecordModel(Base):
    """Durable record of a deprecation migration."""
    __tablename__ = "migration_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phase: Mapped[str] = mapped_column(String(20), index=True)  # planned, executing, completed, rolled_back, failed
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    elements: Mapped[List[Dict[str, Any]]] = mapped_column(JSON)
    safety_checks: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    approval: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    notes: Mapped[List[str]] = mapped_column(JSON, default=list)
    phase_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)


class AccessEventModel(Base):
    """An access to a deprecated element (telemetry 'database' storage)."""
    __tablename__ = "access_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    element_name: Mapped[str] = mapped_column(String(200))
    element_type: Mapped[str] = mapped_column(String(20))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    source: Mapped[Dict[str, Any]] = mapped_column(JSON)
    query_type: Mapped[str] = mapped_column(String(10))
    execution_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index("ix_access_events_element_time", "element_name", "timestamp"),
    )


class AlertRecordModel(Base):
    """Alert history written by the database alert channel."""
    __tablename__ = "alert_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    severity: Mapped[str] = mapped_column(String(20))
    type: Mapped[str] = mapped_column(String(50))
    title: Mapped[str] = mapped_column(String(300))
    message: Mapped[str] = mapped_column(Text)
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
