from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "dim",
}


class ExportProgress:
    """
    One indeterminate task per report showing rows exported so far. The vault
    listings do not report totals up front, so there is no bar, only counts.
    """

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled)
        self._console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._tasks: Dict[str, Any] = {}
        self._started = False
        if self._enabled:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("{task.description}"),
                TextColumn("{task.completed:,.0f} rows", justify="right"),
                TextColumn("{task.fields[detail]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> ExportProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    def start_report(self, kind: str) -> None:
        if not self._enabled or not self._progress:
            return
        self._tasks[kind] = self._progress.add_task(kind.capitalize(), total=None, detail="")

    def advance_report(self, kind: str, *, count: int = 1, detail: str = "") -> None:
        if not self._enabled or not self._progress or kind not in self._tasks:
            return
        self._progress.update(self._tasks[kind], advance=count, detail=detail)

    def finish_report(self, kind: str, status: str) -> None:
        if not self._enabled or not self._progress or kind not in self._tasks:
            return
        self._progress.update(self._tasks[kind], detail=status)
        self._progress.stop_task(self._tasks[kind])


def render_run_summary_table(
    *,
    enabled: bool,
    jobs: Sequence[Dict[str, Any]],
    outdir: str,
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Export Summary", show_header=True, header_style="bold")
    table.add_column("Report", style="cyan")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Duration (s)", justify="right")
    table.add_column("Error", overflow="fold")
    for job in jobs:
        status = str(job.get("status") or "")
        style = _STATUS_STYLES.get(status, "white")
        duration_ms = job.get("duration_ms")
        table.add_row(
            str(job.get("kind") or ""),
            f"[{style}]{status}[/{style}]",
            str(job.get("rows_written", 0)),
            f"{duration_ms / 1000:.1f}" if isinstance(duration_ms, int) else "",
            str(job.get("error") or ""),
        )
    table.caption = f"Output dir: {outdir}"
    (console or Console(stderr=True)).print(table)
