"""Entry point — run a task once, serve the scheduler, or inspect the chatlog service."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from config import settings
from chatlens import chatlog_fetcher, database
from chatlens.exceptions import ChatlensError
from chatlens.pipeline import TaskPipeline
from chatlens.scheduler import Scheduler
from chatlens.transcript_parser import parse_payload

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def run_once(task_id: int) -> int:
    """Run one task synchronously. Returns a process exit code."""
    state = TaskPipeline().run(task_id)
    logger.info(
        "Task %s: %s (%d messages, %d succeeded, %d failed)",
        task_id, state.status, state.total_messages, state.success_count, state.fail_count,
    )
    return 0 if state.fail_count == 0 else 1


async def serve(run_now: list[int] | None = None) -> None:
    """Reconcile stale progress, then keep every enabled task on its schedule.

    Tasks in ``run_now`` are fired once at startup through the scheduler,
    so they share its one-run-per-task guard with the timers.
    """
    database.reset_stale_progress()
    pipeline = TaskPipeline()
    scheduler = Scheduler(run_task=pipeline.run)
    await scheduler.start(database)
    for task_id in run_now or []:
        scheduler.trigger(task_id)
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def list_rooms() -> int:
    for room in chatlog_fetcher.list_chatrooms(settings.chatlog_url):
        print(room)
    return 0


def show_runs(task_id: int | None, limit: int) -> int:
    for run in database.list_runs(task_id=task_id, limit=limit):
        last = run["steps_log"][-1]["message"] if run["steps_log"] else ""
        print(f"{run['started_at']}  {run['run_id']}  task={run['task_id']}  {run['status']}  {last}")
    return 0


def import_transcript(room: str, path: Path) -> int:
    """Parse a transcript file and store it as the room's cached copy."""
    parsed = parse_payload(path.read_text(encoding="utf-8"))
    count = database.import_chatlog(room, parsed.messages)
    logger.info("Imported %d messages for %s from %s (%s)", count, room, path, parsed.shape)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Chatlog analysis pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run one task now")
    run_parser.add_argument("task_id", type=int)

    serve_parser = sub.add_parser("serve", help="Run the scheduler until interrupted")
    serve_parser.add_argument("--run-now", type=int, action="append", metavar="TASK_ID",
                              help="Also fire this task once at startup (repeatable)")
    sub.add_parser("rooms", help="List chatrooms known to the chatlog service")

    runs_parser = sub.add_parser("runs", help="Show recent pipeline runs")
    runs_parser.add_argument("--task", type=int, default=None)
    runs_parser.add_argument("--limit", type=int, default=20)

    import_parser = sub.add_parser("import", help="Cache a transcript file for a room")
    import_parser.add_argument("room")
    import_parser.add_argument("path", type=Path)

    args = parser.parse_args()

    try:
        if args.command == "run":
            sys.exit(run_once(args.task_id))
        elif args.command == "serve":
            asyncio.run(serve(args.run_now))
        elif args.command == "rooms":
            sys.exit(list_rooms())
        elif args.command == "runs":
            sys.exit(show_runs(args.task, args.limit))
        elif args.command == "import":
            sys.exit(import_transcript(args.room, args.path))
    except ChatlensError as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(0)


if __name__ == "__main__":
    main()
