"""Entry point for the imap_advanced package.

Usage::

    python -m imap_advanced trigger                       # watch a mailbox, emit to Kafka
    python -m imap_advanced action request.json [--continue-on-fail]

An action request file holds one request object or a list of them; each
result is printed to stdout as one JSON line.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

from .config import RunnerConfig
from .logging import setup_logging

USAGE = "Usage: python -m imap_advanced <trigger | action <request.json> [--continue-on-fail]>"


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("trigger", "action"):
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]
    config = RunnerConfig()
    setup_logging(json=config.log_json, level=config.log_level)

    if mode == "trigger":
        from .runner import TriggerRunner

        runner = TriggerRunner(config)
        asyncio.run(runner.run())

    elif mode == "action":
        if len(sys.argv) < 3:
            print(USAGE, file=sys.stderr)
            sys.exit(1)
        continue_on_fail = "--continue-on-fail" in sys.argv[3:]
        sys.exit(asyncio.run(_run_actions(config, Path(sys.argv[2]), continue_on_fail)))


async def _run_actions(config: RunnerConfig, path: Path, continue_on_fail: bool) -> int:
    from .actions import ImapActions
    from .binary import S3BinaryStore
    from .errors import ImapAdvancedError

    requests = json.loads(path.read_text("utf-8"))
    if isinstance(requests, dict):
        requests = [requests]

    store = S3BinaryStore(config.s3) if config.s3.bucket else None
    if store is not None:
        await store.start()
    try:
        results = await ImapActions(config.imap, binary_store=store).execute(
            requests, continue_on_fail=continue_on_fail
        )
    except ImapAdvancedError as exc:
        print(json.dumps({"error": str(exc), "errorType": exc.kind}), file=sys.stderr)
        return 1
    finally:
        if store is not None:
            await store.stop()

    for result in results:
        line = {"json": result.json, "binary": result.binary, "pairedItem": result.paired_item}
        print(json.dumps(line))
    return 0


if __name__ == "__main__":
    main()
