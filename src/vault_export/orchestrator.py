from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import REPORT_KINDS
from .logging import StepTimers, get_logger, log_event
from .reports import ReportContext, ReportOutput, ReportRunner
from .util.errors import ExitCode, VaultApiError

LOG = get_logger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class ReportJob:
    kind: str
    status: JobStatus = JobStatus.PENDING
    rows_written: int = 0
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: Optional[int] = None

    def _transition(self, new: JobStatus) -> None:
        if new not in _ALLOWED_TRANSITIONS[self.status]:
            raise RuntimeError(f"Report job '{self.kind}' cannot move from {self.status.value} to {new.value}")
        self.status = new

    def start(self) -> None:
        self._transition(JobStatus.RUNNING)

    def succeed(self, output: ReportOutput) -> None:
        self._transition(JobStatus.SUCCEEDED)
        self.rows_written = output.rows_written
        self.outputs = [str(p) for p in output.outputs]

    def fail(self, exc: BaseException) -> None:
        self._transition(JobStatus.FAILED)
        self.error = str(exc) or type(exc).__name__
        self.error_type = type(exc).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status.value,
            "rows_written": self.rows_written,
            "outputs": list(self.outputs),
            "error": self.error,
            "error_type": self.error_type,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class RunOutcome:
    jobs: Sequence[ReportJob]

    @property
    def succeeded(self) -> bool:
        return all(job.status is JobStatus.SUCCEEDED for job in self.jobs)

    @property
    def failed_jobs(self) -> List[ReportJob]:
        return [job for job in self.jobs if job.status is JobStatus.FAILED]

    @property
    def exit_code(self) -> int:
        return int(ExitCode.OK) if self.succeeded else int(ExitCode.REPORT_FAILED)


class ReportOrchestrator:
    """
    Runs the selected reports one after another in declared order
    (accounts, users, safes). A failing report is recorded and logged and the
    remaining reports still run; the aggregate exit code is non-zero if any
    report failed.
    """

    def __init__(self, ctx: ReportContext, runners: Mapping[str, ReportRunner]) -> None:
        self.ctx = ctx
        self.runners = dict(runners)

    def plan(self, selected: Sequence[str]) -> List[ReportJob]:
        unknown = sorted(set(selected) - set(REPORT_KINDS))
        if unknown:
            raise ValueError(f"Unknown report kind(s): {', '.join(unknown)}")
        missing = [kind for kind in selected if kind not in self.runners]
        if missing:
            raise ValueError(f"No runner registered for: {', '.join(missing)}")
        return [ReportJob(kind) for kind in REPORT_KINDS if kind in selected]

    def _run_job(self, job: ReportJob, timers: StepTimers) -> None:
        progress = self.ctx.progress
        job.start()
        if progress is not None:
            progress.start_report(job.kind)
        log_event(
            LOG,
            logging.INFO,
            "Report started",
            step="report",
            phase="start",
            timers=timers,
            timer_key=job.kind,
            report=job.kind,
        )
        try:
            output = self.runners[job.kind](self.ctx)
        except Exception as e:
            job.fail(e)
            context = e.context() if isinstance(e, VaultApiError) else {}
            job.duration_ms = log_event(
                LOG,
                logging.ERROR,
                "Report failed",
                step="report",
                phase="error",
                timers=timers,
                timer_key=job.kind,
                report=job.kind,
                error=job.error,
                error_type=job.error_type,
                **context,
            )
            LOG.debug("Report failure traceback", exc_info=True, extra={"report": job.kind})
        else:
            job.succeed(output)
            job.duration_ms = log_event(
                LOG,
                logging.INFO,
                "Report complete",
                step="report",
                phase="complete",
                timers=timers,
                timer_key=job.kind,
                report=job.kind,
                rows=job.rows_written,
                outputs=job.outputs,
            )
        if progress is not None:
            progress.finish_report(job.kind, job.status.value)

    def run(self, selected: Sequence[str]) -> RunOutcome:
        jobs = self.plan(selected)
        timers = StepTimers()
        for job in jobs:
            self._run_job(job, timers)
        outcome = RunOutcome(jobs)
        if outcome.succeeded:
            LOG.info("All reports succeeded", extra={"reports": [j.kind for j in jobs]})
        else:
            LOG.error(
                "One or more reports failed",
                extra={"failed": [j.kind for j in outcome.failed_jobs]},
            )
        return outcome
