"""Create versioned object store tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stored_objects",
        sa.Column("object_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("resource_version", sa.Integer(), nullable=False),
        sa.Column("phase", sa.String(), nullable=True),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("object_id"),
        sa.UniqueConstraint("kind", "namespace", "name", name="uq_stored_objects_identity"),
    )
    op.create_index(
        "idx_stored_objects_kind_phase",
        "stored_objects",
        ["kind", "namespace", "phase"],
    )

    op.create_table(
        "stored_object_labels",
        sa.Column("label_id", sa.Integer(), nullable=False),
        sa.Column("object_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(
            ["object_id"],
            ["stored_objects.object_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("label_id"),
        sa.UniqueConstraint("object_id", "key", name="uq_stored_object_labels_key"),
    )
    op.create_index(
        "idx_stored_object_labels_selector",
        "stored_object_labels",
        ["kind", "namespace", "key", "value"],
    )

    op.create_table(
        "stored_object_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("resource_version", sa.Integer(), nullable=False),
        sa.Column("object_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "idx_stored_object_events_kind",
        "stored_object_events",
        ["kind", "event_id"],
    )


def downgrade() -> None:
    op.drop_index("idx_stored_object_events_kind", table_name="stored_object_events")
    op.drop_table("stored_object_events")
    op.drop_index("idx_stored_object_labels_selector", table_name="stored_object_labels")
    op.drop_table("stored_object_labels")
    op.drop_index("idx_stored_objects_kind_phase", table_name="stored_objects")
    op.drop_table("stored_objects")
