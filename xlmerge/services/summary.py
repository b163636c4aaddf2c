from __future__ import annotations

from ..models.import_result import ImportResult

"""Summary line rendering service.

Format:
SUMMARY table={schema.table} success={true|false} rows={written}
inserted={n} updated={n} unchanged={n} rejected={n} errors={n} elapsed_sec={x}
"""


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # Format very small numbers to avoid scientific notation
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: ImportResult) -> str:
    """Render the SUMMARY line for one import.

    Examples:
        >>> result = ImportResult(
        ...     table="master.Projects", success=True, rows_written=3,
        ...     inserted=2, updated=1, unchanged=4, elapsed_seconds=2.0,
        ... )
        >>> render_summary_line(result)  # doctest: +ELLIPSIS
        'SUMMARY table=master.Projects success=true rows=3 inserted=2 updated=1 ...'
    """
    return (
        f"SUMMARY table={result.table or '-'} "
        f"success={'true' if result.success else 'false'} "
        f"rows={result.rows_written} "
        f"inserted={result.inserted} "
        f"updated={result.updated} "
        f"unchanged={result.unchanged} "
        f"rejected={result.rejected} "
        f"errors={len(result.errors)} "
        f"elapsed_sec={_format_seconds(result.elapsed_seconds)}"
    )
