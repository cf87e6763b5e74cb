"""Occurrence repository protocol."""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Optional, Protocol

from ..entities import Occurrence, OccurrenceStatus


class OccurrenceRepository(Protocol):
    """Storage port for occurrences.

    Implementations must enforce uniqueness of
    ``(client_id, care_item_slug, date_key)`` and provide atomic appends and
    compare-and-set status updates.
    """

    def get_by_id(self, occurrence_id: int) -> Optional[Occurrence]:
        """Retrieve an occurrence by ID."""
        ...

    def get_by_identity(
        self, client_id: str, care_item_slug: str, date_key: str
    ) -> Optional[Occurrence]:
        """Retrieve an occurrence by its unique identity."""
        ...

    def get_or_create(
        self, client_id: str, care_item_slug: str, on: date, date_key: str
    ) -> tuple[Occurrence, bool]:
        """Return the occurrence for the identity, inserting it if missing.

        The boolean is True when this call created the row.
        """
        ...

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

        ``comments`` and ``files`` are appended in the same write, and only
        when the transition wins.
        """
        ...

    def append_comment(self, occurrence_id: int, text: str) -> bool:
        """Atomically append a comment. Returns False if the occurrence is missing."""
        ...

    def append_file(self, occurrence_id: int, file_ref: str) -> bool:
        """Atomically append a file reference. Returns False if the occurrence is missing."""
        ...

    def list_between(
        self,
        client_id: str,
        start: date,
        end: date,
        slugs: Optional[Iterable[str]] = None,
    ) -> list[Occurrence]:
        """List occurrences with ``start <= date <= end`` ordered by date then slug."""
        ...

    def delete_for_care_item(self, client_id: str, care_item_slug: str) -> int:
        """Remove every occurrence of a care item for a client."""
        ...
