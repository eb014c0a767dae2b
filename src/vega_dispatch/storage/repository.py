"""Versioned object store repository with labels and a change log."""

from __future__ import annotations

import json
from collections.abc import Collection, Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from vega_dispatch.errors import AlreadyExistsError, ConflictError, NotFoundError
from vega_dispatch.models import (
    EntityT,
    EventType,
    ObjectEvent,
    ObjectMeta,
    StoredEntity,
    decode_entity,
)
from vega_dispatch.storage.alembic_runner import upgrade_head
from vega_dispatch.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from vega_dispatch.storage.sqlmodel_models import (
    StoredObject,
    StoredObjectEvent,
    StoredObjectLabel,
)


class ObjectStore:
    """Typed get/list/create/update/delete over SQLModel + SQLite.

    Every object carries a resource version. ``update`` is a conditional write
    on that version and raises ``ConflictError`` when another writer got there
    first. Each write appends one row to the change log in the same
    transaction; informers poll that log to implement watches.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def get(self, kind: type[EntityT], *, namespace: str, name: str) -> EntityT:
        with Session(self.engine) as session:
            row = _find_row(session, kind=kind.KIND, namespace=namespace, name=name)
            if row is None:
                raise NotFoundError(kind.KIND, namespace, name)
            labels = _load_labels(session, [_object_id(row)])
            return _to_entity(row, labels.get(_object_id(row), {}))

    def list(
        self,
        kind: type[EntityT],
        *,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        phase: str | Enum | None = None,
    ) -> list[EntityT]:
        """List objects of one kind filtered by namespace, exact labels and indexed phase."""

        statement = select(StoredObject).where(StoredObject.kind == kind.KIND)
        if namespace is not None:
            statement = statement.where(StoredObject.namespace == namespace)
        if phase is not None:
            statement = statement.where(
                StoredObject.phase == (phase.value if isinstance(phase, Enum) else phase),
            )
        for key, value in sorted((labels or {}).items()):
            statement = statement.where(
                exists().where(
                    col(StoredObjectLabel.object_id) == col(StoredObject.object_id),
                    col(StoredObjectLabel.key) == key,
                    col(StoredObjectLabel.value) == value,
                ),
            )
        statement = statement.order_by(col(StoredObject.namespace), col(StoredObject.name))

        with Session(self.engine) as session:
            rows = list(session.exec(statement).all())
            label_map = _load_labels(session, [_object_id(row) for row in rows])
            return [_to_entity(row, label_map.get(_object_id(row), {})) for row in rows]

    def create(self, obj: EntityT) -> EntityT:
        """Insert a new object; the returned copy carries uid, version 1 and creation time."""

        meta = obj.meta
        now = utc_now()
        body_json = _dump(obj.to_payload())
        with Session(self.engine) as session:
            existing = _find_row(session, kind=obj.KIND, namespace=meta.namespace, name=meta.name)
            if existing is not None:
                raise AlreadyExistsError(obj.KIND, meta.namespace, meta.name)
            row = StoredObject(
                kind=obj.KIND,
                namespace=meta.namespace,
                name=meta.name,
                uid=str(uuid4()),
                resource_version=1,
                phase=obj.indexed_phase,
                body_json=body_json,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise AlreadyExistsError(obj.KIND, meta.namespace, meta.name) from error

            _write_labels(session, row=row, labels=meta.labels)
            stored_meta = ObjectMeta(
                name=meta.name,
                namespace=meta.namespace,
                labels=dict(meta.labels),
                uid=row.uid,
                resource_version=1,
                created_at=now,
            )
            _add_event(
                session,
                event_type=EventType.ADDED,
                kind=obj.KIND,
                meta=stored_meta,
                body_json=body_json,
            )
            session.commit()
        return decode_entity(obj.KIND, stored_meta, json.loads(body_json))

    def update(self, obj: EntityT) -> EntityT:
        """Write ``obj`` only if the stored version still equals ``obj.meta.resource_version``."""

        meta = obj.meta
        expected = meta.resource_version
        now = utc_now()
        body_json = _dump(obj.to_payload())
        with Session(self.engine) as session:
            row = _find_row(session, kind=obj.KIND, namespace=meta.namespace, name=meta.name)
            if row is None:
                raise NotFoundError(obj.KIND, meta.namespace, meta.name)
            if row.resource_version != expected:
                raise ConflictError(obj.KIND, meta.namespace, meta.name, expected_version=expected)

            result = session.exec(
                sa_update(StoredObject)
                .where(
                    col(StoredObject.object_id) == row.object_id,
                    col(StoredObject.resource_version) == expected,
                )
                .values(
                    resource_version=expected + 1,
                    phase=obj.indexed_phase,
                    body_json=body_json,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(obj.KIND, meta.namespace, meta.name, expected_version=expected)

            _write_labels(session, row=row, labels=meta.labels, replace=True)
            stored_meta = ObjectMeta(
                name=meta.name,
                namespace=meta.namespace,
                labels=dict(meta.labels),
                uid=row.uid,
                resource_version=expected + 1,
                created_at=to_utc_aware(row.created_at),
            )
            _add_event(
                session,
                event_type=EventType.MODIFIED,
                kind=obj.KIND,
                meta=stored_meta,
                body_json=body_json,
            )
            session.commit()
        return decode_entity(obj.KIND, stored_meta, json.loads(body_json))

    def delete(
        self,
        kind: type[StoredEntity],
        *,
        namespace: str,
        name: str,
        resource_version: int | None = None,
    ) -> None:
        """Delete an object, optionally only if it is still at ``resource_version``."""

        with Session(self.engine) as session:
            row = _find_row(session, kind=kind.KIND, namespace=namespace, name=name)
            if row is None:
                raise NotFoundError(kind.KIND, namespace, name)
            if resource_version is not None and row.resource_version != resource_version:
                raise ConflictError(
                    kind.KIND,
                    namespace,
                    name,
                    expected_version=resource_version,
                )
            labels = _load_labels(session, [_object_id(row)]).get(_object_id(row), {})

            session.exec(
                sa_delete(StoredObjectLabel).where(
                    col(StoredObjectLabel.object_id) == row.object_id,
                ),
            )
            result = session.exec(
                sa_delete(StoredObject).where(
                    col(StoredObject.object_id) == row.object_id,
                    col(StoredObject.resource_version) == row.resource_version,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    kind.KIND,
                    namespace,
                    name,
                    expected_version=row.resource_version,
                )

            _add_event(
                session,
                event_type=EventType.DELETED,
                kind=kind.KIND,
                meta=_row_meta(row, labels),
                body_json=row.body_json,
            )
            session.commit()

    def list_events(
        self,
        *,
        after_id: int,
        kinds: Collection[str] | None = None,
        limit: int = 500,
    ) -> list[ObjectEvent]:
        """Return change-log entries newer than ``after_id`` in commit order."""

        statement = select(StoredObjectEvent).where(col(StoredObjectEvent.event_id) > after_id)
        if kinds is not None:
            statement = statement.where(col(StoredObjectEvent.kind).in_(sorted(kinds)))
        statement = statement.order_by(col(StoredObjectEvent.event_id).asc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_object_event(row) for row in rows]

    def last_event_id(self) -> int:
        with Session(self.engine) as session:
            value = session.exec(select(func.max(StoredObjectEvent.event_id))).one()
        return int(value or 0)

    def prune_events(self, *, older_than: datetime) -> int:
        """Drop change-log rows older than the cutoff; returns number of rows removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(StoredObjectEvent).where(
                    col(StoredObjectEvent.created_at) < older_than,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)


def _find_row(session: Session, *, kind: str, namespace: str, name: str) -> StoredObject | None:
    return session.exec(
        select(StoredObject).where(
            StoredObject.kind == kind,
            StoredObject.namespace == namespace,
            StoredObject.name == name,
        ),
    ).one_or_none()


def _object_id(row: StoredObject) -> int:
    if row.object_id is None:  # pragma: no cover - rows read back always have ids
        raise RuntimeError("Stored object row has no primary key")
    return row.object_id


def _load_labels(session: Session, object_ids: Iterable[int]) -> dict[int, dict[str, str]]:
    ids = list(object_ids)
    if not ids:
        return {}
    rows = session.exec(
        select(StoredObjectLabel).where(col(StoredObjectLabel.object_id).in_(ids)),
    ).all()
    labels: dict[int, dict[str, str]] = {}
    for row in rows:
        labels.setdefault(row.object_id, {})[row.key] = row.value
    return labels


def _write_labels(
    session: Session,
    *,
    row: StoredObject,
    labels: Mapping[str, str],
    replace: bool = False,
) -> None:
    object_id = _object_id(row)
    if replace:
        session.exec(
            sa_delete(StoredObjectLabel).where(col(StoredObjectLabel.object_id) == object_id),
        )
    for key, value in sorted(labels.items()):
        session.add(
            StoredObjectLabel(
                object_id=object_id,
                kind=row.kind,
                namespace=row.namespace,
                key=key,
                value=value,
            ),
        )


def _add_event(
    session: Session,
    *,
    event_type: EventType,
    kind: str,
    meta: ObjectMeta,
    body_json: str,
) -> None:
    session.add(
        StoredObjectEvent(
            kind=kind,
            namespace=meta.namespace,
            name=meta.name,
            event_type=event_type.value,
            resource_version=meta.resource_version,
            object_json=json.dumps(
                {"metadata": meta.to_payload(), "body": json.loads(body_json)},
                ensure_ascii=False,
                sort_keys=True,
            ),
            created_at=utc_now(),
        ),
    )


def _row_meta(row: StoredObject, labels: Mapping[str, str]) -> ObjectMeta:
    return ObjectMeta(
        name=row.name,
        namespace=row.namespace,
        labels=dict(labels),
        uid=row.uid,
        resource_version=row.resource_version,
        created_at=to_utc_aware(row.created_at),
    )


def _to_entity(row: StoredObject, labels: Mapping[str, str]) -> Any:
    return decode_entity(row.kind, _row_meta(row, labels), json.loads(row.body_json))


def _to_object_event(row: StoredObjectEvent) -> ObjectEvent:
    snapshot = json.loads(row.object_json)
    meta = ObjectMeta.from_payload(snapshot["metadata"])
    return ObjectEvent(
        event_id=int(row.event_id or 0),
        event_type=EventType(row.event_type),
        kind=row.kind,
        obj=decode_entity(row.kind, meta, snapshot["body"]),
        created_at=to_utc_aware(row.created_at),
    )


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)
