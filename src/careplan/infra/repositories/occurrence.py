"""SQLModel implementation of Occurrence repository."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, select

from ...domain.clock import as_utc
from ...domain.entities import Occurrence, OccurrenceStatus, normalize_slug
from ...errors import DuplicateOccurrenceError
from ...logging_config import get_logger
from ...models.occurrence import OccurrenceComment, OccurrenceFile, OccurrenceRecord
from ..retry import storage_guard

logger = get_logger("infra.occurrences")

# Entity attribute -> column for compare_and_set_status extras.
_UPDATABLE_FIELDS = {
    "cost": "cost_cents",
    "completed_on": "completed_on",
    "completed_by": "completed_by",
    "completed_at": "completed_at",
    "done_by": "done_by",
    "done_at": "done_at",
}


def _to_entity(row: OccurrenceRecord) -> Occurrence:
    return Occurrence(
        id=row.id,
        client_id=row.client_id,
        care_item_slug=row.care_item_slug,
        date=row.date,
        date_key=row.date_key,
        status=OccurrenceStatus(row.status),
        comments=[c.body for c in row.comments],
        files=[f.file_ref for f in row.files],
        cost=row.cost_cents,
        completed_on=row.completed_on,
        completed_by=row.completed_by,
        completed_at=as_utc(row.completed_at),
        done_by=row.done_by,
        done_at=as_utc(row.done_at),
        created_at=as_utc(row.created_at),
    )


def _with_children(statement):
    return statement.options(
        selectinload(OccurrenceRecord.comments),  # type: ignore[arg-type]
        selectinload(OccurrenceRecord.files),  # type: ignore[arg-type]
    )


class SQLModelOccurrenceRepository:
    """SQLModel-based occurrence repository implementation."""

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize with a session factory."""
        self.session_factory = session_factory

    def get_by_id(self, occurrence_id: int) -> Optional[Occurrence]:
        """Retrieve an occurrence by ID."""
        with storage_guard("occurrence.get"), self.session_factory() as session:
            row = session.exec(
                _with_children(select(OccurrenceRecord).where(OccurrenceRecord.id == occurrence_id))
            ).first()
            return _to_entity(row) if row else None

    def get_by_identity(
        self, client_id: str, care_item_slug: str, date_key: str
    ) -> Optional[Occurrence]:
        """Retrieve an occurrence by its unique identity."""
        with storage_guard("occurrence.get"), self.session_factory() as session:
            statement = _with_children(
                select(OccurrenceRecord)
                .where(OccurrenceRecord.client_id == client_id)
                .where(OccurrenceRecord.care_item_slug == normalize_slug(care_item_slug))
                .where(OccurrenceRecord.date_key == date_key)
            )
            row = session.exec(statement).first()
            return _to_entity(row) if row else None

    def get_or_create(
        self, client_id: str, care_item_slug: str, on: date, date_key: str
    ) -> tuple[Occurrence, bool]:
        """Return the occurrence for the identity, inserting it if missing.

        Two writers racing on the same identity both reach the INSERT; the
        unique index rejects the loser, which then re-reads the winner's row.
        """
        slug = normalize_slug(care_item_slug)
        existing = self.get_by_identity(client_id, slug, date_key)
        if existing is not None:
            return existing, False

        try:
            with storage_guard("occurrence.create"), self.session_factory() as session:
                row = OccurrenceRecord(
                    client_id=client_id,
                    care_item_slug=slug,
                    date=on,
                    date_key=date_key,
                    status=OccurrenceStatus.DUE.value,
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return _to_entity(row), True
        except IntegrityError:
            logger.info(
                "Occurrence already materialized by a concurrent writer",
                extra={"client_id": client_id, "care_item_slug": slug, "date_key": date_key},
            )

        existing = self.get_by_identity(client_id, slug, date_key)
        if existing is None:
            raise DuplicateOccurrenceError(
                "Uniqueness guard rejected an occurrence that cannot be re-read",
                client_id=client_id,
                care_item_slug=slug,
                date_key=date_key,
            )
        return existing, False

    def compare_and_set_status(
        self,
        occurrence_id: int,
        *,
        expected: Iterable[OccurrenceStatus],
        status: OccurrenceStatus,
        comments: Iterable[str] = (),
        files: Iterable[str] = (),
        **fields: Any,
    ) -> bool:
        """Atomically move to ``status`` if the current status is in ``expected``.

        Appended comments and files share the transaction of the UPDATE, so
        they are written only when the transition wins.
        """
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise TypeError(f"Unsupported occurrence fields: {sorted(unknown)}")

        values: dict[str, Any] = {_UPDATABLE_FIELDS[key]: value for key, value in fields.items()}
        values["status"] = status.value
        values["updated_at"] = datetime.now(timezone.utc)
        statement = (
            update(OccurrenceRecord)
            .where(col(OccurrenceRecord.id) == occurrence_id)
            .where(col(OccurrenceRecord.status).in_([s.value for s in expected]))
            .values(**values)
        )
        with storage_guard("occurrence.set_status"), self.session_factory() as session:
            result = session.execute(statement)
            if result.rowcount != 1:
                session.rollback()
                return False
            for text in comments:
                session.add(OccurrenceComment(occurrence_id=occurrence_id, body=text))
            for file_ref in files:
                session.add(OccurrenceFile(occurrence_id=occurrence_id, file_ref=file_ref))
            session.commit()
            return True

    def append_comment(self, occurrence_id: int, text: str) -> bool:
        """Append a comment as its own row; concurrent appends never overwrite each other."""
        return self._append(occurrence_id, OccurrenceComment(occurrence_id=occurrence_id, body=text))

    def append_file(self, occurrence_id: int, file_ref: str) -> bool:
        """Append a file reference as its own row."""
        return self._append(
            occurrence_id, OccurrenceFile(occurrence_id=occurrence_id, file_ref=file_ref)
        )

    def _append(self, occurrence_id: int, child: OccurrenceComment | OccurrenceFile) -> bool:
        with storage_guard("occurrence.append"), self.session_factory() as session:
            if session.get(OccurrenceRecord, occurrence_id) is None:
                return False
            session.add(child)
            session.execute(
                update(OccurrenceRecord)
                .where(col(OccurrenceRecord.id) == occurrence_id)
                .values(updated_at=datetime.now(timezone.utc))
            )
            session.commit()
            return True

    def list_between(
        self,
        client_id: str,
        start: date,
        end: date,
        slugs: Optional[Iterable[str]] = None,
    ) -> list[Occurrence]:
        """List occurrences with ``start <= date <= end`` ordered by date then slug."""
        statement = (
            select(OccurrenceRecord)
            .where(OccurrenceRecord.client_id == client_id)
            .where(OccurrenceRecord.date >= start)
            .where(OccurrenceRecord.date <= end)
        )
        wanted = sorted({normalize_slug(s) for s in slugs or () if normalize_slug(s)})
        if wanted:
            statement = statement.where(col(OccurrenceRecord.care_item_slug).in_(wanted))
        statement = statement.order_by(
            col(OccurrenceRecord.date), col(OccurrenceRecord.care_item_slug)
        )
        with storage_guard("occurrence.list"), self.session_factory() as session:
            rows = session.exec(_with_children(statement)).all()
            return [_to_entity(row) for row in rows]

    def delete_for_care_item(self, client_id: str, care_item_slug: str) -> int:
        """Remove every occurrence of a care item for a client, with its comments and files."""
        slug = normalize_slug(care_item_slug)
        with storage_guard("occurrence.delete"), self.session_factory() as session:
            ids = list(
                session.exec(
                    select(OccurrenceRecord.id)
                    .where(OccurrenceRecord.client_id == client_id)
                    .where(OccurrenceRecord.care_item_slug == slug)
                ).all()
            )
            if not ids:
                return 0
            session.execute(delete(OccurrenceComment).where(col(OccurrenceComment.occurrence_id).in_(ids)))
            session.execute(delete(OccurrenceFile).where(col(OccurrenceFile.occurrence_id).in_(ids)))
            session.execute(delete(OccurrenceRecord).where(col(OccurrenceRecord.id).in_(ids)))
            session.commit()
            return len(ids)
