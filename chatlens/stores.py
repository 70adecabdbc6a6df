"""Interfaces of the stores the pipeline reads from and writes to.

``chatlens.database`` implements all of them as module functions; tests
pass in fakes.
"""

from typing import Protocol, runtime_checkable

from chatlens.models import Message, ProgressState, Report, Task


@runtime_checkable
class TaskStore(Protocol):
    def get_enabled_tasks(self) -> list[Task]: ...

    def get_task(self, task_id: int) -> Task | None: ...

    def set_progress(self, task_id: int, state: ProgressState) -> None: ...


@runtime_checkable
class ReportStore(Protocol):
    def create_report(self, report: Report) -> int: ...


@runtime_checkable
class LocalCacheStore(Protocol):
    def get_messages_for_rooms(self, rooms: list[str]) -> dict[str, list[Message]]: ...


@runtime_checkable
class PromptTemplateStore(Protocol):
    def get_prompt_template(self, template_id: int) -> dict | None: ...

    def get_default_prompt_template(self) -> dict | None: ...


@runtime_checkable
class RunLog(Protocol):
    def start_run(self, run_id: str, task_id: int | None = None) -> None: ...

    def log_step(self, run_id: str, step: str, status: str, message: str = "") -> None: ...

    def finish_run(self, run_id: str, status: str, error_message: str = "") -> None: ...
