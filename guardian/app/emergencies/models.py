"""
models.py — ORM tables and status enums for the emergency workflow.

Defines:
    • EmergencyStatus   — incident lifecycle states
    • ParticipantStatus — per-contact response states
    • User              — account row (owned by the auth service, read here)
    • EmergencyContact  — contact-list row (owned by contact CRUD, read here)
    • Emergency         — one distress incident
    • EmergencyParticipant — a contact's relationship to one emergency
    • EmergencyLocation — append-only location sample
    • EmergencyMessage  — immutable chat message

═══════════════════════════════════════════════════════════════════════════
STATE MACHINES
═══════════════════════════════════════════════════════════════════════════

    Emergency                      Participant

    active ──end────► ended        pending ──accept──► accepted
       │                              │
       └──cancel──► cancelled         └──reject──► rejected

Terminal emergency states are final. ``escalated`` is part of the value set
but nothing writes it: escalation is broadcast as an event only.
Participant rows can be rewritten (accepted ↔ rejected); nothing guards it.

═══════════════════════════════════════════════════════════════════════════
INVARIANTS ENFORCED BY THE SCHEMA
═══════════════════════════════════════════════════════════════════════════

    • one active emergency per creator — partial unique index
      (creator_user_id) WHERE status = 'active'
    • one participant row per (emergency_id, user_id)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from guardian.app.core.database import Base


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyStatus(str, Enum):
    ACTIVE    = "active"
    ENDED     = "ended"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"  # reserved, never persisted


class ParticipantStatus(str, Enum):
    PENDING  = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def _generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Collaborator-owned tables
# ═══════════════════════════════════════════════════════════════════════════

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    push_subscription: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def label(self) -> str:
        return self.display_name or self.email


class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    contact_user_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id"), nullable=True,
    )
    contact_name: Mapped[str] = mapped_column(String(255))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════
# Emergency workflow tables
# ═══════════════════════════════════════════════════════════════════════════

class Emergency(Base):
    __tablename__ = "emergencies"
    __table_args__ = (
        Index(
            "uq_emergencies_one_active_per_creator",
            "creator_user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    creator_user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=EmergencyStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status == EmergencyStatus.ACTIVE.value


class EmergencyParticipant(Base):
    __tablename__ = "emergency_participants"
    __table_args__ = (
        UniqueConstraint("emergency_id", "user_id", name="uq_participant_per_emergency"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    emergency_id: Mapped[str] = mapped_column(ForeignKey("emergencies.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ParticipantStatus.PENDING.value)
    joined_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class EmergencyLocation(Base):
    __tablename__ = "emergency_locations"
    __table_args__ = (
        Index("ix_locations_emergency_user_time", "emergency_id", "user_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    emergency_id: Mapped[str] = mapped_column(ForeignKey("emergencies.id"))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # metres
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class EmergencyMessage(Base):
    __tablename__ = "emergency_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    emergency_id: Mapped[str] = mapped_column(ForeignKey("emergencies.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audio_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
