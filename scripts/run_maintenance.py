from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import get_args

from finsight.core.logging import configure_logging
from finsight.persistence.db import engine
from finsight.services.maintenance import MaintenanceTask, run_task
from finsight.services.notifications import get_notification_dispatcher


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one scheduler job outside the worker")
    parser.add_argument("task", choices=get_args(MaintenanceTask))
    parser.add_argument("--dry-run", action="store_true", help="Report what the retention sweep would do")
    return parser


async def _run(args: argparse.Namespace) -> int:
    try:
        result = await run_task(args.task, dry_run=args.dry_run)
        await get_notification_dispatcher().drain()
    finally:
        await engine.dispose()
    print(json.dumps(result, indent=2, default=str))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface job failures clearly
        print(f"{args.task} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
