from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .graph import GraphNode

"""Migration result models.

RowState is the per-row state machine; RowOutcome is what the migrator yields
for each row; MigrationResult aggregates a whole run for the SUMMARY line.
"""


class RowState(Enum):
    """Per-row migration state.

    State transitions:
    pending → mapped → resolved → defaulted → shim_applied → validated → (written | rejected)

    Any state before written may move to rejected.
    """
    PENDING = "pending"
    MAPPED = "mapped"
    RESOLVED = "resolved"
    DEFAULTED = "defaulted"
    SHIM_APPLIED = "shim_applied"
    VALIDATED = "validated"
    WRITTEN = "written"
    REJECTED = "rejected"


@dataclass
class WriteRecord:
    """Persistence actions taken for one row's graph."""
    created: list[GraphNode] = field(default_factory=list)
    updated: list[GraphNode] = field(default_factory=list)
    unchanged: list[GraphNode] = field(default_factory=list)  # matched, left as is (create_only)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.updated)


@dataclass
class RowOutcome:
    """Result of advancing one row through the state machine."""
    row_number: int
    state: RowState = RowState.PENDING
    root: GraphNode | None = None  # None when rejected
    reasons: list[str] = field(default_factory=list)
    written: WriteRecord | None = None

    @property
    def rejected(self) -> bool:
        return self.state is RowState.REJECTED

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)

    def reject(self, *reasons: Any) -> None:
        self.reasons.extend(str(r) for r in reasons if r)
        if not self.reasons:
            self.reasons.append("rejected")
        self.state = RowState.REJECTED
        self.root = None


@dataclass(frozen=True)
class MigrationResult:
    """Aggregated results for the SUMMARY output."""
    processed_rows: int  # rows read after the offset
    validated_rows: int  # rows reaching validated (dry run) or written
    written_rows: int  # rows persisted (commit mode only)
    rejected_rows: int  # rows sent to the bad-record sink
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_rows_per_sec: float  # processed / elapsed
    stopped: bool = False  # run interrupted between rows
    bad_file: str | None = None
