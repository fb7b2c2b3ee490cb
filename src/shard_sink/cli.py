from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Optional

import psycopg
import typer
from loguru import logger

from .config import load_settings
from .errors import ShardSinkError
from .executor import probe_lightweight_delete
from .router import ShardRouter
from .utils import iter_ndjson, record_from_mapping
from .writer import SinkWriter

app = typer.Typer(help="shard_sink operational CLI")

# ---------------------------
# Common options
# ---------------------------


def bulk_size_opt() -> Optional[int]:
    return typer.Option(None, "--bulk-size", help="Flush a shard when its pending rows reach this")


def interval_opt() -> Optional[int]:
    return typer.Option(None, "--interval-ms", help="Interval flush period in milliseconds")


def _settings(**overrides):
    try:
        return load_settings(**{k: v for k, v in overrides.items() if v is not None})
    except ShardSinkError as e:
        logger.error(f"Configuration error: {e}")
        raise typer.Exit(code=2)


def _router(settings) -> ShardRouter:
    try:
        return ShardRouter(settings.to_metadata())
    except ShardSinkError as e:
        logger.error(f"Configuration error: {e}")
        raise typer.Exit(code=2)


# ---------------------------
# Commands
# ---------------------------


@app.command("route")
def route(keys: List[str] = typer.Argument(..., help="Shard key values to route")):
    """Show which shard each key routes to."""
    router = _router(_settings())
    for key in keys:
        shard = router.route(key)
        typer.echo(json.dumps({"key": key, "shard_id": shard.shard_id, "dsn": shard.dsn}))


@app.command("probe")
def probe():
    """Report the lightweight-delete capability of every shard."""
    settings = _settings()
    router = _router(settings)
    failed = False
    for _weight, shard in router.shards():
        try:
            with psycopg.connect(shard.dsn, **settings.connection_properties) as conn:
                enabled = probe_lightweight_delete(conn)
            typer.echo(json.dumps({"shard_id": shard.shard_id, "lightweight_delete": enabled}))
        except (psycopg.Error, ShardSinkError) as e:
            failed = True
            logger.error(f"Probe failed on shard {shard.shard_id}: {e}")
            typer.echo(json.dumps({"shard_id": shard.shard_id, "error": str(e)}))
    if failed:
        raise typer.Exit(code=1)


@app.command("load")
def load(
    src: str = typer.Argument(..., help="NDJSON file path, or '-' for stdin"),
    bulk_size: Optional[int] = bulk_size_opt(),
    interval_ms: Optional[int] = interval_opt(),
):
    """Write NDJSON records through a sharded SinkWriter."""
    settings = _settings(bulk_size=bulk_size, batch_interval_ms=interval_ms)
    schema = settings.to_schema()
    count = 0
    try:
        with SinkWriter.from_settings(settings) as writer:
            stream = sys.stdin if src == "-" else Path(src).open("r", encoding="utf-8")
            try:
                for obj in iter_ndjson(stream):
                    writer.write(record_from_mapping(obj, schema))
                    count += 1
            finally:
                if stream is not sys.stdin:
                    stream.close()
    except ShardSinkError as e:
        logger.error(f"Load failed after {count} records: {type(e).__name__}: {e}")
        typer.echo(json.dumps({"ok": False, "records": count, "error": str(e)}))
        raise typer.Exit(code=1)

    typer.echo(json.dumps({"ok": True, "records": count}))


if __name__ == "__main__":
    app()
