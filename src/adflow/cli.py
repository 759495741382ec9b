from __future__ import annotations

import asyncio
import json
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from loguru import logger

from .coordinator.settings import get_settings
from .runtime import ConsumerRuntime, ProducerRuntime

app = typer.Typer(help="adflow campaign-event pipeline CLI")


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at ``level``."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message}",
    )


def level_opt() -> Optional[str]:
    return typer.Option(None, "--log-level", envvar="ADFLOW_LOG_LEVEL", help="Log level")


def iter_ndjson(path: str, skipped: Optional[list[int]] = None) -> Iterator[Any]:
    """Yield one object per non-blank line; malformed lines are logged and skipped.

    Line numbers of skipped lines are appended to ``skipped`` when given.
    """
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                logger.error(f"{path}:{lineno}: malformed JSON ({exc.msg}); skipped")
                if skipped is not None:
                    skipped.append(lineno)


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # windows
            pass


# ---------------------------
# Long-running processes
# ---------------------------


@app.command("consume")
def consume(
    drain_timeout: float = typer.Option(30.0, "--drain-timeout", help="Seconds to wait for loops on stop"),
    log_level: Optional[str] = level_opt(),
):
    """Poll the queue and write every event to the raw and normalized stores."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)

    async def _run():
        runtime = ConsumerRuntime.from_settings(settings)
        stop = asyncio.Event()
        _stop_on_signals(stop)
        await runtime.start()
        try:
            await stop.wait()
        finally:
            await runtime.stop(timeout=drain_timeout)

    asyncio.run(_run())


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    log_level: Optional[str] = level_opt(),
):
    """Run the HTTP ingest endpoint (POST /events)."""
    from .ingest import serve as serve_app

    settings = get_settings()
    configure_logging(log_level or settings.log_level)

    async def _run():
        runtime = ProducerRuntime.from_settings(settings)
        stop = asyncio.Event()
        _stop_on_signals(stop)
        server = asyncio.create_task(
            serve_app(runtime.publisher, host=host or settings.http_host, port=port or settings.http_port)
        )
        await stop.wait()
        server.cancel()
        await asyncio.gather(server, return_exceptions=True)

    asyncio.run(_run())


# ---------------------------
# Operational commands
# ---------------------------


@app.command("publish")
def publish(
    path: str = typer.Argument(..., help="NDJSON file, one event object per line"),
    log_level: Optional[str] = level_opt(),
):
    """Publish events from an NDJSON file through the batching publisher."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)

    async def _run() -> dict:
        runtime = ProducerRuntime.from_settings(settings)
        malformed: list[int] = []
        async with runtime:
            results = await asyncio.gather(
                *(runtime.publisher.publish(obj) for obj in iter_ndjson(path, malformed))
            )
        failed = [r for r in results if not r.success]
        for r in failed:
            logger.error(f"[{r.correlation_id}] {r.error}")
        return {
            "published": len(results) - len(failed),
            "failed": len(failed) + len(malformed),
            "malformed_lines": malformed,
        }

    summary = asyncio.run(_run())
    typer.echo(json.dumps(summary, indent=2))
    if summary["failed"]:
        raise typer.Exit(code=1)


@app.command("ping")
def ping():
    """Check both stores are reachable and report their schema version."""
    from adflow_client import NormalizedEventStore, RawEventStore

    settings = get_settings()

    async def _run() -> dict:
        out = {}
        for name, store in (
            ("raw", RawEventStore({"dsn": settings.raw_database_url})),
            ("normalized", NormalizedEventStore({"dsn": settings.normalized_database_url})),
        ):
            try:
                out[name] = {"ok": await store.health(), "schema_version": await store.schema_version()}
            finally:
                await store.aclose()
        return out

    typer.echo(json.dumps(asyncio.run(_run()), indent=2))


@app.command()
def migrate(target: str = "head"):
    """Run Alembic migrations to ``target`` on the raw and normalized databases."""
    settings = get_settings()
    configure_logging(settings.log_level)

    urls = [u for u in dict.fromkeys([settings.raw_database_url, settings.normalized_database_url]) if u]
    if not urls:
        logger.error("ADFLOW_RAW_DATABASE_URL / ADFLOW_NORMALIZED_DATABASE_URL not set")
        raise typer.Exit(code=1)

    for url in urls:
        logger.info(f"Running migrations to {target}")
        result = subprocess.run(
            ["alembic", "-x", f"dburl={url}", "upgrade", target],
            capture_output=True,
            text=True,
            cwd=Path(__file__).parent.parent.parent,
        )

        if result.returncode == 0:
            logger.success(f"Successfully migrated to {target}")
            if result.stdout:
                logger.info(f"Migration output: {result.stdout}")
        else:
            logger.error(f"Migration failed: {result.stderr}")
            raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
