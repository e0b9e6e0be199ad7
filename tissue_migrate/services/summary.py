from __future__ import annotations

from tissue_migrate.models.migration_result import MigrationResult

"""SUMMARY line rendering.

Format::

    SUMMARY rows={processed} validated={validated} written={written} rejected={rejected} elapsed_sec={elapsed} throughput_rps={throughput}

``stopped=true`` is appended when the run was interrupted between rows.
"""

__all__ = [
    "format_number",
    "render_summary_line",
]


def format_number(value: float) -> str:
    """Integers without a fraction, tiny values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if abs(value) < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: MigrationResult) -> str:
    """Render the SUMMARY line for a finished run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = MigrationResult(
        ...     processed_rows=10, validated_rows=9, written_rows=9, rejected_rows=1,
        ...     start_time=start, end_time=end, elapsed_seconds=2.0,
        ...     throughput_rows_per_sec=5.0,
        ... )
        >>> render_summary_line(result)
        'SUMMARY rows=10 validated=9 written=9 rejected=1 elapsed_sec=2 throughput_rps=5'
    """
    line = (
        f"SUMMARY rows={result.processed_rows} "
        f"validated={result.validated_rows} "
        f"written={result.written_rows} "
        f"rejected={result.rejected_rows} "
        f"elapsed_sec={format_number(result.elapsed_seconds)} "
        f"throughput_rps={format_number(result.throughput_rows_per_sec)}"
    )
    if result.stopped:
        line += " stopped=true"
    return line
