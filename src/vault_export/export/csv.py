from __future__ import annotations

import csv
import gc
import io
from pathlib import Path
from typing import IO, Any, Iterable, List, Mapping, Optional

from ..logging import get_logger
from ..normalize.schema import ColumnSchema
from ..normalize.transform import project_rows
from ..util.errors import ExportError

LOG = get_logger(__name__)

DEFAULT_GC_EVERY = 50_000


class StreamingCsvExporter:
    """
    Append-only CSV sink for one report file.

    open() truncates the file and writes the header. write_batch() projects a
    batch of records through the column schema and issues a single write for
    the whole batch. Every gc_every records a gc.collect() checkpoint runs so
    very large exports keep a flat working set. close() always releases the
    file handle; use the exporter as a context manager.
    """

    def __init__(self, path: Path, schema: ColumnSchema, *, gc_every: int = DEFAULT_GC_EVERY) -> None:
        self.path = path
        self.schema = schema
        self.gc_every = gc_every
        self.records_processed = 0
        self.rows_written = 0
        self.gc_checkpoints = 0
        self._next_checkpoint = gc_every if gc_every > 0 else 0
        self._fh: Optional[IO[str]] = None

    def open(self) -> StreamingCsvExporter:
        if self._fh is not None:
            raise ExportError(f"Exporter for {self.path} is already open")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("w", encoding="utf-8", newline="")
            self._fh.write(self._encode([self.schema.headers]))
        except OSError as e:
            self.close()
            raise ExportError(f"Failed to open {self.path} for writing: {e}") from e
        return self

    def __enter__(self) -> StreamingCsvExporter:
        return self.open()

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.close()

    @staticmethod
    def _encode(rows: List[List[str]]) -> str:
        buf = io.StringIO()
        csv.writer(buf).writerows(rows)
        return buf.getvalue()

    def write_batch(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Write one batch; returns the number of rows written for it."""
        if self._fh is None:
            raise ExportError(f"Exporter for {self.path} is not open")
        rows: List[List[str]] = []
        count = 0
        for record in records:
            rows.extend(project_rows(record, self.schema))
            count += 1
        if rows:
            try:
                self._fh.write(self._encode(rows))
            except OSError as e:
                raise ExportError(f"Failed to write to {self.path}: {e}") from e
        self.records_processed += count
        self.rows_written += len(rows)
        self._maybe_checkpoint()
        return len(rows)

    def _maybe_checkpoint(self) -> None:
        if not self._next_checkpoint:
            return
        if self.records_processed < self._next_checkpoint:
            return
        collected = gc.collect()
        self.gc_checkpoints += 1
        while self._next_checkpoint <= self.records_processed:
            self._next_checkpoint += self.gc_every
        LOG.info(
            "Memory checkpoint",
            extra={"report": self.schema.name, "records": self.records_processed, "collected": collected},
        )

    def close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.flush()
        finally:
            fh.close()
