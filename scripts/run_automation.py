#!/usr/bin/env python3
"""Run the automation service: execute one task, or keep serving alarms until interrupted."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from marks_vault.automation import AutomationService
from marks_vault.logging_setup import setup_logging
from marks_vault.utils.hydra_config.init import conf, to_container

logger = logging.getLogger("marks_vault.scripts.run_automation")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MarksVault automation runner")
    parser.add_argument("--task", help="execute a single task by id and exit")
    parser.add_argument("--list", action="store_true", help="print stored tasks and exit")
    return parser.parse_args(argv)


async def _serve(service: AutomationService, args: argparse.Namespace) -> int:
    await service.ensure_initialized()
    if args.list:
        storage = await service.repository.get_tasks()
        for task in storage.tasks.values():
            print(f"{task.id}\t{task.status.value}\t{task.trigger.type.value}\t{task.action.type.value}\t{task.name}")
        return 0
    if args.task:
        result = await service.execute_task(args.task)
        if result.success:
            print(result.details or "ok")
            return 0
        print(result.error, file=sys.stderr)
        return 1
    logger.info("自动化服务运行中，按 Ctrl+C 退出")
    await asyncio.Event().wait()
    return 0


def main(argv: list[str]) -> int:
    args = _parse_args(argv[1:])
    log_cfg = to_container(conf.logging) if "logging" in conf else {}
    setup_logging(level=log_cfg.get("level", "INFO"), log_dir=log_cfg.get("log_dir"))
    service = AutomationService.from_global_config()
    try:
        return asyncio.run(_serve(service, args))
    except KeyboardInterrupt:
        return 0
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main(sys.argv))
