"""SQLAlchemy models for Happenings."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .dates import utcnow
from .recurrence import RecurrenceDescriptor

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Happening(Base):
    __tablename__ = "happenings"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    start_time = Column(String(5), nullable=True)
    event_date = Column(String(10), nullable=True)
    day_of_week = Column(String(16), nullable=True)
    recurrence_rule = Column(String(64), nullable=True)
    custom_dates = Column(JSON, nullable=True)
    recurrence_end_date = Column(String(10), nullable=True)
    max_occurrences = Column(Integer, nullable=True)
    is_published = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    overrides = relationship(
        "OccurrenceOverride",
        back_populates="happening",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OccurrenceOverride.date_key",
    )

    @property
    def descriptor(self) -> RecurrenceDescriptor:
        """Return the stored recurrence fields as an engine descriptor."""
        return RecurrenceDescriptor(
            event_date=self.event_date,
            day_of_week=self.day_of_week,
            recurrence_rule=self.recurrence_rule,
            custom_dates=self.custom_dates,
            recurrence_end_date=self.recurrence_end_date,
            max_occurrences=self.max_occurrences,
        )


class OccurrenceOverride(Base):
    __tablename__ = "occurrence_overrides"
    __table_args__ = (
        UniqueConstraint("happening_id", "date_key", name="uq_override_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    happening_id = Column(
        String(36), ForeignKey("happenings.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    status = Column(String(16), nullable=False, default="cancelled")
    override_start_time = Column(String(5), nullable=True)
    override_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    happening = relationship("Happening", back_populates="overrides")
