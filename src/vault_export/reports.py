from __future__ import annotations

from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .export.csv import DEFAULT_GC_EVERY, StreamingCsvExporter
from .logging import get_logger
from .normalize.schema import (
    ACCOUNT_SCHEMA,
    SAFE_SCHEMA,
    USER_DETAILS_SCHEMA,
    USER_GROUPS_SCHEMA,
    ColumnSchema,
    OutputPaths,
)
from .util.pagination import DEFAULT_PAGE_SIZE, JsonGetter, PageResult
from .util.rich_progress import ExportProgress
from .vault.resources import (
    fetch_users_page,
    iter_account_pages,
    iter_account_pages_per_safe,
    iter_safe_pages,
)

LOG = get_logger(__name__)

PARTIAL_SUFFIX = ".partial"


@dataclass
class ReportContext:
    requester: JsonGetter
    base_url: str
    paths: OutputPaths
    page_size: int = DEFAULT_PAGE_SIZE
    gc_every: int = DEFAULT_GC_EVERY
    accounts_search: Optional[str] = None
    accounts_safe: Optional[str] = None
    accounts_per_safe: bool = False
    progress: Optional[ExportProgress] = None


@dataclass
class ReportOutput:
    rows_written: int = 0
    outputs: List[Path] = field(default_factory=list)


ReportRunner = Callable[[ReportContext], ReportOutput]


def _batched(records: List[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    it = iter(records)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


class _CsvTarget:
    """
    Exporter writing to `<name>.partial`, renamed to its final path only when
    the whole report succeeds. A failed report never leaves a file that looks
    complete.
    """

    def __init__(self, path: Path, schema: ColumnSchema, gc_every: int) -> None:
        self.final_path = path
        self.partial_path = path.with_name(path.name + PARTIAL_SUFFIX)
        self.exporter = StreamingCsvExporter(self.partial_path, schema, gc_every=gc_every)

    def __enter__(self) -> StreamingCsvExporter:
        if self.final_path.exists():
            self.final_path.unlink()
        return self.exporter.open()

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.exporter.close()
        if exc_type is None:
            self.partial_path.replace(self.final_path)
        else:
            LOG.warning(
                "Report output left incomplete",
                extra={"report": self.exporter.schema.name, "path": str(self.partial_path)},
            )


def _export_pages(
    kind: str,
    pages: Iterable[PageResult],
    target: _CsvTarget,
    progress: Optional[ExportProgress],
) -> int:
    rows = 0
    with target as exporter:
        for page in pages:
            written = exporter.write_batch(page.records)
            rows += written
            if progress is not None:
                progress.advance_report(kind, count=written, detail=f"offset {page.offset}")
    return rows


def run_accounts_report(ctx: ReportContext) -> ReportOutput:
    if ctx.accounts_per_safe:
        pages = iter_account_pages_per_safe(
            ctx.requester, ctx.base_url, ctx.page_size, search=ctx.accounts_search
        )
    else:
        pages = iter_account_pages(
            ctx.requester,
            ctx.base_url,
            ctx.page_size,
            search=ctx.accounts_search,
            safe_name=ctx.accounts_safe,
        )
    target = _CsvTarget(ctx.paths.accounts_csv, ACCOUNT_SCHEMA, ctx.gc_every)
    rows = _export_pages("accounts", pages, target, ctx.progress)
    return ReportOutput(rows_written=rows, outputs=[ctx.paths.accounts_csv])


def run_safes_report(ctx: ReportContext) -> ReportOutput:
    pages = iter_safe_pages(ctx.requester, ctx.base_url, ctx.page_size)
    target = _CsvTarget(ctx.paths.safes_csv, SAFE_SCHEMA, ctx.gc_every)
    rows = _export_pages("safes", pages, target, ctx.progress)
    return ReportOutput(rows_written=rows, outputs=[ctx.paths.safes_csv])


def run_users_report(ctx: ReportContext) -> ReportOutput:
    """
    Users come back from a single listing call; the details file and the
    group-membership file are written from the same batches.
    """
    page = fetch_users_page(ctx.requester, ctx.base_url)
    details = _CsvTarget(ctx.paths.users_csv, USER_DETAILS_SCHEMA, ctx.gc_every)
    groups = _CsvTarget(ctx.paths.user_groups_csv, USER_GROUPS_SCHEMA, ctx.gc_every)
    rows = 0
    with details as details_out, groups as groups_out:
        for batch in _batched(page.records, ctx.page_size):
            written = details_out.write_batch(batch)
            groups_out.write_batch(batch)
            rows += written
            if ctx.progress is not None:
                ctx.progress.advance_report("users", count=written)
    LOG.info(
        "User group memberships exported",
        extra={"report": "users", "rows": groups.exporter.rows_written},
    )
    return ReportOutput(rows_written=rows, outputs=[ctx.paths.users_csv, ctx.paths.user_groups_csv])


REPORT_RUNNERS: Dict[str, ReportRunner] = {
    "accounts": run_accounts_report,
    "users": run_users_report,
    "safes": run_safes_report,
}
