"""Write report HTML files and their records — one record per attempted room."""

import logging
import re
import time
from pathlib import Path

from config import settings
from chatlens.exceptions import ReportAssemblyError
from chatlens.models import AnalysisOutcome, Report, ReportStatus, TimeWindow
from chatlens.stores import ReportStore

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_filename(name: str) -> str:
    cleaned = UNSAFE_FILENAME_CHARS.sub("_", name or "").strip().strip(".")
    return cleaned or "room"


def report_filename(task_id: int, room: str | None, epoch_ms: int | None = None) -> str:
    epoch_ms = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    return f"{safe_filename(room or 'task')}_{task_id}_{epoch_ms}.html"


def write_report_file(html: str, filename: str, reports_dir: Path | None = None) -> Path:
    """Write report HTML under ``reports_dir``.

    Raises:
        ReportAssemblyError: If the file cannot be written.
    """
    directory = reports_dir or Path(settings.reports_dir)
    path = directory / filename
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(html, encoding="utf-8")
    except OSError as e:
        raise ReportAssemblyError(f"Failed to write report {path}: {e}") from e
    logger.info("Wrote report %s (%d bytes)", path, len(html.encode("utf-8")))
    return path


def assemble(
    task_id: int,
    task_name: str,
    room: str | None,
    outcome: AnalysisOutcome | None,
    message_count: int,
    window: TimeWindow | None,
    report_store: ReportStore,
    reports_dir: Path | None = None,
    error_message: str | None = None,
) -> Report:
    """Persist one room's report and return the stored record.

    ``outcome`` may be None for a failure that happened before analysis
    (the task-level "no messages" report, or a room whose prompt could not
    be built); then only a failed record is created, carrying
    ``error_message``.

    If writing the file or creating the record fails, a failed record
    carrying the error is created instead, so every attempted room ends up
    with exactly one record.
    """
    succeeded = outcome is not None and outcome.success
    report = Report(
        task_id=task_id,
        task_name=task_name,
        room=room,
        status=ReportStatus.SUCCESS if succeeded else ReportStatus.FAILED,
        time_window=window,
        message_count=message_count,
        error_message=None if succeeded else (error_message or (outcome.error if outcome else None)),
    )

    try:
        if outcome is not None and outcome.html:
            path = write_report_file(outcome.html, report_filename(task_id, room), reports_dir)
            report.file = path.name
        report.id = report_store.create_report(report)
        logger.info("Report %s for task %s room %s: %s", report.id, task_id, room, report.status)
        return report
    except Exception as e:
        logger.error("Report assembly failed for task %s room %s: %s", task_id, room, e)
        failed = Report(
            task_id=task_id,
            task_name=task_name,
            room=room,
            status=ReportStatus.FAILED,
            time_window=window,
            file=report.file,
            message_count=message_count,
            error_message=f"Report assembly failed: {e}",
        )
        failed.id = report_store.create_report(failed)
        return failed
