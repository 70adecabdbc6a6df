"""Task pipeline — gather messages, analyze each room, aggregate.

Steps:
    1. Gather messages per room (live fetch, cached copy as fallback)
    2. Analyze rooms one after another, one report per room
    3. Aggregate room outcomes into the task's progress state
"""

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from config import settings
from chatlens import chatlog_fetcher, database, llm_client, prompt_builder
from chatlens.exceptions import (
    ErrorKind,
    TaskNotFoundError,
    TranscriptFetchError,
    TranscriptParseError,
)
from chatlens.html_report import ReportContext, render_failure
from chatlens.model_catalog import max_input_tokens_for
from chatlens.models import (
    AnalysisOutcome,
    Message,
    ProgressState,
    ReportStatus,
    RunState,
    RunStatus,
    Task,
    TimeWindow,
)
from chatlens.report_assembler import assemble
from chatlens.stores import LocalCacheStore, PromptTemplateStore, ReportStore, RunLog, TaskStore
from chatlens.time_window import FilterStats, filter_messages, now_local, resolve

logger = logging.getLogger(__name__)

PROGRESS_FOR_STATUS = {
    RunStatus.SUCCESS: ProgressState.COMPLETED,
    RunStatus.PARTIAL: ProgressState.FAILED,
    RunStatus.FAILED: ProgressState.FAILED,
}


class TaskPipeline:
    """Runs one task end to end.

    Every collaborator is injectable; the defaults are the SQLite stores,
    the chatlog service client and the LLM gateway.
    """

    def __init__(
        self,
        tasks: TaskStore = database,
        reports: ReportStore = database,
        cache: LocalCacheStore = database,
        templates: PromptTemplateStore = database,
        runs: RunLog = database,
        fetch: Callable[..., list[Message]] = chatlog_fetcher.fetch,
        analyze: Callable[..., AnalysisOutcome] = llm_client.analyze,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = now_local,
        service_url: str | None = None,
        reports_dir: Path | None = None,
    ):
        self.tasks = tasks
        self.reports = reports
        self.cache = cache
        self.templates = templates
        self.runs = runs
        self.fetch = fetch
        self.analyze = analyze
        self.sleep = sleep
        self.clock = clock
        self.service_url = service_url
        self.reports_dir = reports_dir

    def run(self, task_id: int) -> RunState:
        """Run a task and return its run state.

        Raises:
            TaskNotFoundError: If the task store has no such task.
        """
        run_id = uuid.uuid4().hex[:12]
        self.runs.start_run(run_id, task_id)

        task = self.tasks.get_task(task_id)
        if task is None:
            self.runs.finish_run(run_id, "failed", f"Task {task_id} not found")
            raise TaskNotFoundError(f"Task {task_id} not found")

        logger.info("Run %s: task %s (%s), %d room(s)", run_id, task.id, task.name, len(task.rooms))
        self.tasks.set_progress(task.id, ProgressState.ANALYZING)

        try:
            # The only clock read of the run; fetch and filter share this window
            now = self.clock()
            window = resolve(task.time_range, now)

            # 1. Gather messages
            self.runs.log_step(run_id, "1. Gather messages", "running", window.wire)
            messages_by_room = self._gather(task, window, now)
            state = RunState(total_messages=sum(len(m) for m in messages_by_room.values()))

            if state.total_messages == 0:
                msg = f"No messages found for {', '.join(task.rooms) or 'any room'} in {window.wire}"
                logger.warning("Task %s: %s", task.id, msg)
                assemble(task.id, task.name, None, None, 0, window, self.reports,
                         self.reports_dir, error_message=msg)
                state.fail_count = 1
                self.tasks.set_progress(task.id, ProgressState.FAILED)
                self.runs.log_step(run_id, "1. Gather messages", "failed", msg)
                self.runs.finish_run(run_id, "failed", msg)
                return state

            msg = f"Gathered {state.total_messages} messages from {len(messages_by_room)} room(s)"
            logger.info(msg)
            self.runs.log_step(run_id, "1. Gather messages", "success", msg)

            # 2. Analyze rooms, strictly in the task's order
            self.runs.log_step(run_id, "2. Analyze rooms", "running")
            system_prompt = prompt_builder.resolve_system_prompt(task, self.templates)
            max_input_tokens = max_input_tokens_for(task.model)

            for index, room in enumerate(task.rooms):
                self._process_room(task, room, messages_by_room.get(room, []),
                                   window, system_prompt, max_input_tokens, state)
                if index < len(task.rooms) - 1:
                    self.sleep(settings.room_delay_seconds)

            msg = f"{state.success_count} succeeded, {state.fail_count} failed"
            self.runs.log_step(run_id, "2. Analyze rooms",
                               "success" if state.fail_count == 0 else "failed", msg)

            # 3. Aggregate
            status = state.status
            self.tasks.set_progress(task.id, PROGRESS_FOR_STATUS[status])
            logger.info("Task %s finished: %s (%s)", task.id, status, msg)
            self.runs.log_step(run_id, "3. Aggregate", str(status), msg)
            self.runs.finish_run(run_id, "success" if status == RunStatus.SUCCESS else str(status),
                                 "" if status == RunStatus.SUCCESS else msg)
            return state

        except Exception as e:
            logger.error("Task %s run failed unexpectedly: %s", task.id, e)
            self.tasks.set_progress(task.id, ProgressState.FAILED)
            self.runs.log_step(run_id, "Unexpected error", "failed", str(e))
            self.runs.finish_run(run_id, "failed", str(e))
            raise

    def _gather(self, task: Task, window: TimeWindow, now: datetime) -> dict[str, list[Message]]:
        """Fetch each room independently; fall back to the cache for rooms that came back empty."""
        service_url = self.service_url or settings.chatlog_url
        gathered: dict[str, list[Message]] = {}
        missing: list[str] = []

        for room in task.rooms:
            try:
                raw = self.fetch(service_url, room, window, now)
                messages = filter_messages(raw, window, FilterStats())
            except (TranscriptFetchError, TranscriptParseError) as e:
                logger.warning("Live fetch failed for %s: %s", room, e)
                messages = []
            except Exception as e:
                logger.error("Could not read messages for %s: %s", room, e)
                messages = []
            if messages:
                gathered[room] = messages
            else:
                missing.append(room)

        if missing:
            try:
                cached = self.cache.get_messages_for_rooms(missing)
            except (sqlite3.Error, OSError) as e:
                logger.error("Chatlog cache unavailable: %s", e)
                cached = {}
            for room in missing:
                if cached.get(room):
                    logger.warning("Using %d cached messages for %s", len(cached[room]), room)
                    gathered[room] = cached[room]
                else:
                    logger.warning("No live or cached messages for %s", room)

        return gathered

    def _process_room(
        self,
        task: Task,
        room: str,
        messages: list[Message],
        window: TimeWindow,
        system_prompt: str,
        max_input_tokens: int,
        state: RunState,
    ) -> None:
        """Analyze one room and record exactly one report for it."""
        message_count = len(messages)
        if not messages:
            outcome = None
            error = f"No messages for {room} in {window.wire}"
        else:
            try:
                block = prompt_builder.build_room_block(room, messages, window.start.tzinfo)
                bundle = prompt_builder.fit_to_budget(
                    prompt_builder.build(system_prompt, [block]), max_input_tokens,
                )
                message_count = bundle.message_count
                context = ReportContext(task_name=task.name, room=room, message_count=message_count)
                outcome = self.analyze(bundle, task.model, context)
                error = outcome.error
            except Exception as e:
                logger.error("Analysis of %s failed: %s", room, e)
                context = ReportContext(task_name=task.name, room=room, message_count=message_count)
                outcome = AnalysisOutcome(
                    room=room,
                    raw_text="",
                    html=render_failure(context, ErrorKind.UNKNOWN, str(e)),
                    success=False,
                    error=str(e),
                    error_kind=ErrorKind.UNKNOWN,
                )
                error = str(e)

        if outcome is None:
            outcome = AnalysisOutcome(room=room, raw_text="", html="", success=False, error=error)

        try:
            report = assemble(task.id, task.name, room, outcome, message_count, window,
                              self.reports, self.reports_dir, error_message=error)
            report_ok = report.status == ReportStatus.SUCCESS
        except Exception as e:
            logger.error("Could not record a report for %s: %s", room, e)
            report_ok = False

        state.record(outcome, report_ok)
        logger.info("Room %s: %s", room, "success" if outcome.success and report_ok else "failed")
