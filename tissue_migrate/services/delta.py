from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any, Protocol

from tissue_migrate.config.loader import ConfigurationError

"""Delta selector: identifiers of entities of one type changed in a time window.

The change log records (table name, identifier, changed timestamp). A target
type is translated to a table-name regular expression; the window is half-open,
``since <= changed_at < before``.
"""

__all__ = [
    "BUILTIN_TABLE_PATTERNS",
    "ChangeSource",
    "Delta",
]

logger = logging.getLogger(__name__)

BUILTIN_TABLE_PATTERNS: dict[str, str] = {
    "Specimen": r"^(?:[a-z]+_)?specimen$",
    "SpecimenCollectionGroup": r"^specimen_coll(?:ection)?_group$",
    "Participant": r"^participant$",
}


class ChangeSource(Protocol):
    def changes(self, since: datetime, before: datetime) -> Iterator[tuple[str, Any]]: ...


class Delta:
    """Lazy, re-iterable selection; each iteration queries the change source again."""

    def __init__(
        self,
        source: ChangeSource,
        target: str,
        since: datetime,
        before: datetime | None = None,
        patterns: dict[str, str] | None = None,
    ) -> None:
        table = {**BUILTIN_TABLE_PATTERNS, **(patterns or {})}
        if target not in table:
            raise ConfigurationError(
                f"no change-log table pattern for {target}; known types: {sorted(table)}"
            )
        try:
            self.matcher = re.compile(table[target], re.IGNORECASE)
        except re.error as e:
            raise ConfigurationError(f"invalid table pattern for {target}: {e}") from e
        self.source = source
        self.target = target
        self.since = since
        self.before = before or datetime.now(UTC)
        if self.before < self.since:
            raise ValueError(f"delta window is inverted: {self.since} .. {self.before}")

    def __iter__(self) -> Iterator[Any]:
        logger.debug(f"Selecting {self.target} changes in [{self.since}, {self.before})")
        seen: set[Any] = set()
        for table, identifier in self.source.changes(self.since, self.before):
            if not self.matcher.search(table) or identifier in seen:
                continue
            seen.add(identifier)
            yield identifier
