from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests

from .auth.secrets import build_secret_store
from .auth.session import AuthSession
from .config import RunConfig, dump_config, load_run_config
from .http.requester import ResilientRequester, RetryPolicy
from .http.transport import build_http_session
from .logging import LogConfig, StepTimers, add_run_log_file, get_logger, log_event, remove_run_log_file, setup_logging
from .normalize.schema import OutputPaths, resolve_output_paths
from .normalize.transform import stable_json_dumps
from .orchestrator import ReportOrchestrator, RunOutcome
from .reports import REPORT_RUNNERS, ReportContext
from .util.errors import AuthenticationError, ConfigError, ExitCode, as_exit_code
from .util.rich_progress import ExportProgress, render_run_summary_table
from .util.time import utc_now_iso

LOG = get_logger(__name__)

OUT_SCHEMA_VERSION = "1"


def _build_session(cfg: RunConfig) -> Tuple[requests.Session, AuthSession]:
    if not cfg.base_url:
        raise ConfigError("--base-url is required")
    http = build_http_session(verify_tls=cfg.verify_tls)
    store = build_secret_store(
        cfg.credential_source,
        credentials_file=cfg.credentials_file,
        username=cfg.username,
    )
    auth = AuthSession(
        cfg.base_url,
        store,
        http,
        provider=cfg.auth_provider,
        timeout=cfg.timeout,
    )
    return http, auth


def _write_run_summary(
    paths: OutputPaths,
    outcome: RunOutcome,
    cfg: RunConfig,
    *,
    started_at: str,
    refresh_count: int,
    http_calls: int,
) -> Path:
    summary: Dict[str, Any] = {
        "schema_version": OUT_SCHEMA_VERSION,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "status": "OK" if outcome.succeeded else "FAILED",
        "exit_code": outcome.exit_code,
        "reports": [job.to_dict() for job in outcome.jobs],
        "token_refreshes": refresh_count,
        "http_calls": http_calls,
        "config": dump_config(cfg),
    }
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.run_summary_json.write_text(stable_json_dumps(summary) + "\n", encoding="utf-8")
    return paths.run_summary_json


def cmd_run(cfg: RunConfig) -> int:
    paths = resolve_output_paths(cfg.outdir)
    # Ensure the run directory exists early so logs and the summary always land.
    paths.root.mkdir(parents=True, exist_ok=True)
    add_run_log_file(paths.run_log)
    try:
        return _run_reports(cfg, paths)
    finally:
        remove_run_log_file(paths.run_log)


def _run_reports(cfg: RunConfig, paths: OutputPaths) -> int:
    started_at = utc_now_iso()
    timers = StepTimers()

    log_event(
        LOG,
        logging.INFO,
        "Starting export run",
        step="run",
        phase="start",
        timers=timers,
        outdir=str(cfg.outdir),
        reports=list(cfg.reports),
        url=cfg.base_url,
    )

    http, auth = _build_session(cfg)
    try:
        log_event(LOG, logging.INFO, "Authentication started", step="auth", phase="start", timers=timers)
        try:
            auth.authenticate()
        except AuthenticationError as e:
            log_event(
                LOG,
                logging.ERROR,
                "Authentication failed; no reports attempted",
                step="auth",
                phase="error",
                timers=timers,
                error=str(e),
            )
            raise
        log_event(LOG, logging.INFO, "Authentication complete", step="auth", phase="complete", timers=timers)

        requester = ResilientRequester(
            auth,
            http,
            policy=RetryPolicy(
                max_retries=cfg.max_retries,
                base_delay=cfg.retry_base_delay,
                timeout=cfg.timeout,
            ),
        )
        show_progress = cfg.progress
        if show_progress and cfg.credential_source == "prompt":
            # A token refresh re-prompts for the password; keep the terminal free for it.
            LOG.info("Progress display disabled for prompted credentials")
            show_progress = False
        with ExportProgress(enabled=show_progress) as progress:
            ctx = ReportContext(
                requester=requester,
                base_url=str(cfg.base_url),
                paths=paths,
                page_size=cfg.page_size,
                gc_every=cfg.gc_every,
                accounts_search=cfg.accounts_search,
                accounts_safe=cfg.accounts_safe,
                accounts_per_safe=cfg.accounts_per_safe,
                progress=progress,
            )
            outcome = ReportOrchestrator(ctx, REPORT_RUNNERS).run(cfg.reports)
    finally:
        auth.logoff()
        http.close()

    summary_path = _write_run_summary(
        paths,
        outcome,
        cfg,
        started_at=started_at,
        refresh_count=auth.refresh_count,
        http_calls=requester.calls,
    )
    render_run_summary_table(
        enabled=cfg.progress,
        jobs=[job.to_dict() for job in outcome.jobs],
        outdir=str(cfg.outdir),
    )
    log_event(
        LOG,
        logging.INFO if outcome.succeeded else logging.ERROR,
        "Export run finished",
        step="run",
        phase="complete",
        timers=timers,
        status="OK" if outcome.succeeded else "FAILED",
        summary=str(summary_path),
        token_refreshes=auth.refresh_count,
    )
    return outcome.exit_code


def cmd_validate_auth(cfg: RunConfig) -> int:
    http, auth = _build_session(cfg)
    try:
        auth.authenticate()
        logged_off = auth.logoff()
    finally:
        http.close()
    LOG.info("Authentication validated", extra={"provider": cfg.auth_provider, "logged_off": logged_off})
    # Print to stdout a concise success message (no secrets)
    print(f"OK: authenticated to {cfg.base_url} via {cfg.auth_provider}")
    return int(ExitCode.OK)


def main(argv: Optional[list[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "run":
            code = cmd_run(cfg)
        elif command == "validate-auth":
            code = cmd_validate_auth(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        LOG.error("Interrupted")
        sys.exit(130)
    except Exception as e:
        # Map to consistent exit code and log
        setup_logging(LogConfig())  # no-op when already configured
        LOG.error("Execution failed", extra={"error": str(e), "error_type": type(e).__name__})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
