"""SQLModel ORM tables for the versioned object store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class StoredObject(SQLModel, table=True):
    __tablename__ = "stored_objects"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("kind", "namespace", "name", name="uq_stored_objects_identity"),
        Index("idx_stored_objects_kind_phase", "kind", "namespace", "phase"),
    )

    object_id: int | None = Field(default=None, primary_key=True)
    kind: str
    namespace: str
    name: str
    uid: str
    resource_version: int = Field(default=1)
    phase: str | None = Field(default=None)
    body_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StoredObjectLabel(SQLModel, table=True):
    __tablename__ = "stored_object_labels"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("object_id", "key", name="uq_stored_object_labels_key"),
        Index("idx_stored_object_labels_selector", "kind", "namespace", "key", "value"),
    )

    label_id: int | None = Field(default=None, primary_key=True)
    object_id: int = Field(
        sa_column=Column(
            ForeignKey("stored_objects.object_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    kind: str
    namespace: str
    key: str
    value: str


class StoredObjectEvent(SQLModel, table=True):
    __tablename__ = "stored_object_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_stored_object_events_kind", "kind", "event_id"),)

    event_id: int | None = Field(default=None, primary_key=True)
    kind: str
    namespace: str
    name: str
    event_type: str
    resource_version: int
    object_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
