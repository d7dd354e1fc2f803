"""Command-line interface for promtables."""

import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer

from promtables.catalog import EventRecorder, register_default_metrics
from promtables.errors import BindError
from promtables.infrastructure.config import ConfigError, load_config
from promtables.infrastructure.context import MetricsContext
from promtables.observability.logging import configure_logging, shutdown_logging
from promtables.observability.metrics import Registry
from promtables.stores.base import OpenFlags, StorageError
from promtables.stores.database import SampleStore

app = typer.Typer(
    name="promtables",
    help="Prometheus exporter backed by an embedded SQLite sample store",
    add_completion=False,
)


def _database_path(tables_dir: Path) -> Path:
    return tables_dir / "metrics.db" if tables_dir.is_dir() else tables_dir


def _parse_labels(labels: Optional[list[str]]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in labels or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            typer.echo(f"Error: Labels must look like name=value, got {item!r}", err=True)
            raise typer.Exit(1)
        result[key] = value
    return result


@app.command(name="serve")
def serve_cmd(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML, JSON or TOML configuration file"),
    ] = None,
    exporter: Annotated[
        Optional[str],
        typer.Option("--exporter", "-e", help="Listen address, addr[:port] or [ipv6]:port"),
    ] = None,
    tables_dir: Annotated[
        Optional[Path],
        typer.Option("--tables-dir", "-t", help="Directory holding the metrics database"),
    ] = None,
    namespace: Annotated[
        Optional[str],
        typer.Option("--namespace", "-n", help="Metric name prefix"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="trace, debug, info, warning, error"),
    ] = None,
    log_format: Annotated[
        Optional[str],
        typer.Option("--log-format", help="console, json or logfmt"),
    ] = None,
) -> None:
    """Run the exporter until interrupted. SIGHUP reopens the store."""
    try:
        config = load_config(
            config_file,
            exporter=exporter,
            tables_dir=str(tables_dir) if tables_dir else None,
            namespace=namespace,
            log_level=log_level,
            log_format=log_format,
        )
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    configure_logging(level=config.log_level, format=config.log_format, log_file=config.log_file)
    try:
        _serve(MetricsContext(config), config.poll_interval)
    finally:
        shutdown_logging()


def _serve(context: MetricsContext, poll_interval: float) -> None:
    try:
        context.start()
    except BindError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not context.enabled:
        typer.echo("Error: Metrics are disabled (check engine, exporter and tables_dir)", err=True)
        raise typer.Exit(1)

    typer.echo(f"Serving metrics at {context.server.url}")

    stopped = threading.Event()

    def _handle_stop(signum: int, frame: object) -> None:
        stopped.set()

    def _handle_restart(signum: int, frame: object) -> None:
        try:
            context.restart()
        except BindError:
            stopped.set()

    signal.signal(signal.SIGTERM, _handle_stop)
    signal.signal(signal.SIGINT, _handle_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _handle_restart)

    try:
        while not stopped.wait(poll_interval):
            if not context.enabled:
                break
    finally:
        context.stop()


@app.command(name="dump")
def dump_cmd(
    tables_dir: Annotated[
        Path,
        typer.Option("--tables-dir", "-t", help="Directory holding the metrics database"),
    ],
    namespace: Annotated[
        str,
        typer.Option("--namespace", "-n", help="Metric name prefix"),
    ] = "proftpd",
) -> None:
    """Print the current exposition of the default metrics."""
    if not _database_path(tables_dir).exists():
        typer.echo(f"Error: No metrics database in {tables_dir}", err=True)
        raise typer.Exit(1)

    try:
        with SampleStore.open(tables_dir) as store:
            registry = Registry(namespace, store)
            register_default_metrics(registry, store)
            text = registry.snapshot_text()
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(text, nl=False)


@app.command(name="check")
def check_cmd(
    tables_dir: Annotated[
        Path,
        typer.Option("--tables-dir", "-t", help="Directory holding the metrics database"),
    ],
) -> None:
    """Run the integrity and schema version checks."""
    if not _database_path(tables_dir).exists():
        typer.echo(f"Error: No metrics database in {tables_dir}", err=True)
        raise typer.Exit(1)

    flags = OpenFlags.SCHEMA_VERSION_CHECK | OpenFlags.INTEGRITY_CHECK
    try:
        with SampleStore.open(tables_dir, flags) as store:
            version = store.schema_version()
            path = store.path
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"{path}: ok (schema version {version})")


@app.command(name="record")
def record_cmd(
    name: Annotated[str, typer.Argument(help="Metric name, e.g. login")],
    tables_dir: Annotated[
        Path,
        typer.Option("--tables-dir", "-t", help="Directory holding the metrics database"),
    ],
    delta: Annotated[
        float,
        typer.Option("--delta", "-d", help="Amount to add (negative decrements)"),
    ] = 1.0,
    observe: Annotated[
        bool,
        typer.Option("--observe", help="Record a histogram observation of --delta"),
    ] = False,
    labels: Annotated[
        Optional[list[str]],
        typer.Option("--label", "-l", help="Label as name=value (repeatable)"),
    ] = None,
) -> None:
    """Record one event into the metrics database."""
    label_map = _parse_labels(labels)

    try:
        tables_dir.mkdir(parents=True, exist_ok=True)
        with SampleStore.open(tables_dir) as store:
            registry = Registry("proftpd", store)
            register_default_metrics(registry, store)
            if name not in registry:
                typer.echo(f"Error: Unknown metric: {name}", err=True)
                raise typer.Exit(1)

            recorder = EventRecorder(registry, label_map)
            if observe:
                recorded = recorder.observe(name, delta)
            else:
                recorded = recorder.incr(name, delta)
    except (StorageError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not recorded:
        typer.echo(f"Error: Unable to record {name}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Recorded {name}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
