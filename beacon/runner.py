"""Entry point: boot the pipeline, record JSON-lines events from stdin, flush on exit."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import IO, Any

from dotenv import load_dotenv

from beacon.errors import ConfigError
from beacon.logging_config import setup_logging
from beacon.pipeline import build_pipeline
from beacon.secrets import resolve_api_key
from beacon.settings import get_setting, load_settings
from beacon.storage import KeyValueStore
from beacon.transport import Transport

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def parse_line(line: str) -> tuple[str, dict[str, Any]] | None:
    """Parse one `{"collection": ..., "payload": {...}}` line. None if unusable."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("skipping non-JSON input line: %.80s", line)
        return None
    if not isinstance(data, dict):
        logger.warning("skipping input line that is not an object")
        return None
    collection = data.get("collection")
    if not isinstance(collection, str) or not collection.strip():
        logger.warning("skipping input line without collection")
        return None
    payload = data.get("payload")
    return collection.strip(), payload if isinstance(payload, dict) else {}


async def run(
    stream: IO[str],
    settings: dict[str, Any],
    *,
    project_root: Path = _PROJECT_ROOT,
    store: KeyValueStore | None = None,
    transport: Transport | None = None,
) -> dict[str, Any]:
    """Record every event read from stream, then tear down. Returns final diagnostics."""
    api_key = await resolve_api_key(get_setting(settings, "transport", {}))
    if not api_key:
        logger.warning("no telemetry API key configured; the service may reject requests")
    pipeline = build_pipeline(
        settings,
        project_root=project_root,
        api_key=api_key,
        store=store,
        transport=transport,
    )
    await pipeline.boot()
    recorded = 0
    try:
        while True:
            line = await asyncio.to_thread(stream.readline)
            if not line:
                break
            parsed = parse_line(line)
            if parsed is None:
                continue
            await pipeline.record(*parsed)
            recorded += 1
    finally:
        await pipeline.teardown()
    diagnostics = pipeline.diagnostics()
    logger.info("runner finished: %d events read", recorded)
    return diagnostics


async def main_async() -> None:
    """Bootstrap: settings -> logging -> pipeline -> stdin loop -> teardown."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    diagnostics = await run(sys.stdin, settings)
    print(json.dumps(diagnostics, indent=2), file=sys.stderr)


def main() -> None:
    """Synchronous entry for `python -m beacon`."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except ConfigError as e:
        sys.exit(f"beacon: {e}")
    except KeyboardInterrupt:
        pass  # teardown already ran in run()'s finally block


__all__ = ["main", "run"]
