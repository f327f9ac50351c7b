"""Entry point for `python -m nuclaw`.

Subcommands:
    nuclaw                      Run the scheduler service (default)
    nuclaw allowlist-template   Print an example mount allowlist
    nuclaw add-task ...         Create a scheduled task
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import uuid


def _run() -> None:
    from nuclaw.app import NuclawApp

    app = NuclawApp()
    asyncio.run(app.run())


def _allowlist_template() -> None:
    from nuclaw.mount_security import generate_allowlist_template

    print(generate_allowlist_template())


async def _add_task(group_id: str, schedule_type: str, schedule_value: str, prompt: str) -> str:
    from nuclaw.config import get_settings
    from nuclaw.container_runner import validate_group_id
    from nuclaw.state import SqliteTaskStore
    from nuclaw.task_scheduler import initial_next_run
    from nuclaw.types import ScheduledTask

    validate_group_id(group_id)
    next_run = initial_next_run(
        schedule_type, schedule_value, timezone=get_settings().scheduler.timezone
    )
    task = ScheduledTask(
        id=f"task-{uuid.uuid4().hex[:12]}",
        group_id=group_id,
        prompt=prompt,
        schedule_type=schedule_type,  # type: ignore[arg-type]
        schedule_value=schedule_value,
        next_run_at=next_run,
    )
    store = await SqliteTaskStore.open()
    try:
        await store.create_task(task)
    finally:
        await store.close()
    return f"{task.id} next run {next_run.isoformat()}"


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="nuclaw",
        description="Sandboxed agent execution and task scheduling",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("allowlist-template", help="Print an example mount allowlist")
    add = sub.add_parser("add-task", help="Create a scheduled task")
    add.add_argument("group_id")
    add.add_argument("schedule_type", choices=["cron", "interval", "once"])
    add.add_argument("schedule_value")
    add.add_argument("prompt")

    args = parser.parse_args()

    match args.command:
        case "allowlist-template":
            _allowlist_template()
        case "add-task":
            from nuclaw.errors import NuclawError

            try:
                print(
                    asyncio.run(
                        _add_task(
                            args.group_id, args.schedule_type, args.schedule_value, args.prompt
                        )
                    )
                )
            except NuclawError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                sys.exit(1)
        case _:
            _run()


if __name__ == "__main__":
    main()
