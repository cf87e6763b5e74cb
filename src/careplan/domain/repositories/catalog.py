"""Care-item catalog port.

Care-item templates are owned outside the core; the core only reads the
recurrence rule and budget category for a slug.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from ...services.recurrence import RecurrenceRule


@dataclass(frozen=True)
class CareItemRef:
    slug: str
    label: str
    category_id: Optional[str]
    rule: Optional["RecurrenceRule"] = None


class CareItemCatalog(Protocol):
    def lookup(self, client_id: str, care_item_slug: str) -> CareItemRef:
        """Return the care item definition or raise ``UnknownCareItemError``."""
        ...
