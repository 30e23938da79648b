"""identity_etl.cli

Command-line entry point.

Usage:
  identity-etl --entity role --file ./roles.csv
  identity-etl --entity user --file ./users.csv --config ./import_settings.yml
  python -m identity_etl.cli --entity extemployee --file ./sinta.csv

Exit codes: 0 success, 1 fatal error, 2 usage error, 130 cancelled.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from identity_etl.config import load_settings
from identity_etl.dispatcher import default_dispatcher
from identity_etl.shared import (
    ImportCancelled,
    ImportFatalError,
    RejectWriter,
    RunCounters,
    write_run_report,
)
from identity_etl.source import CancelToken
from identity_etl.store import connect

log = logging.getLogger(__name__)

EXIT_FATAL = 1
EXIT_CANCELLED = 130


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(EXIT_FATAL)


@click.command(
    context_settings={"ignore_unknown_options": True, "allow_extra_args": True}
)
@click.option("--entity", required=True, help="Entity to import (case-insensitive), e.g. user, role, customer")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path),
    help="Input CSV",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(path_type=Path),
    help="YAML settings file (default ./import_settings.yml when present)",
)
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(path_type=Path),
    help="Reject CSV (default ./artifacts/rejects/<entity>_rejects.csv)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--report/--no-report", default=True, show_default=True, help="Write a JSON run report")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    entity: str,
    file_path: Path,
    config_path: Path | None,
    rejects_path: Path | None,
    run_id: str | None,
    report: bool,
    log_level: str,
) -> None:
    """Import one CSV file into the identity store."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    dispatcher = default_dispatcher()
    try:
        strategy = dispatcher.get(entity)
        settings = load_settings(config_path, os.environ)
    except (ImportFatalError, FileNotFoundError) as exc:
        _fatal(run_id, str(exc))
    if not file_path.is_file():
        _fatal(run_id, f"CSV file not found: {file_path}")

    click.echo(
        f"[{run_id}] Starting {strategy.name} import from {file_path} "
        f"(provider={settings.provider}, batch_size={settings.batch_size})"
    )

    cancel = CancelToken()
    try:
        store = connect(settings, cancel)
    except Exception as exc:
        _fatal(run_id, f"cannot connect to {settings.provider}: {exc}")

    rejects = RejectWriter(
        rejects_path or Path(f"./artifacts/rejects/{strategy.name}_rejects.csv")
    )
    counters = RunCounters()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel.cancel())
    try:
        dispatcher.run(
            strategy.name,
            store,
            file_path,
            settings,
            cancel=cancel,
            rejects=rejects,
            counters=counters,
        )
    except ImportCancelled:
        click.echo(f"[{run_id}] Cancelled: {counters.summary()}", err=True)
        sys.exit(EXIT_CANCELLED)
    except Exception as exc:
        log.debug("import failed", exc_info=True)
        click.echo(f"[{run_id}] Counters at failure: {counters.summary()}", err=True)
        _fatal(run_id, f"{type(exc).__name__}: {exc}")
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        rejects.close()
        store.close()

    click.echo(json.dumps(counters.to_dict(), indent=2))
    if rejects.count:
        click.echo(f"[{run_id}] Rejected rows: {rejects.count} -> {rejects.path}")
    if counters.warnings:
        click.echo(f"[{run_id}] Warnings: {len(counters.warnings)}")
    if report:
        report_path = write_run_report(
            run_id, started_at, strategy.name, str(file_path), counters
        )
        click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
