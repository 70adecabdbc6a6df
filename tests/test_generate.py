"""Tests for generate entry point."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from generate import serve


def test_serve_fires_run_now_tasks_through_scheduler():
    with patch("generate.database") as mock_db, \
         patch("generate.TaskPipeline"), \
         patch("generate.Scheduler") as mock_scheduler_cls:
        scheduler = mock_scheduler_cls.return_value
        scheduler.start = AsyncMock(return_value=1)
        scheduler.stop = AsyncMock()

        async def scenario():
            with pytest.raises(TimeoutError):
                await asyncio.wait_for(serve([3, 5]), timeout=0.05)

        asyncio.run(scenario())

    mock_db.reset_stale_progress.assert_called_once()
    scheduler.start.assert_awaited_once_with(mock_db)
    assert [c.args for c in scheduler.trigger.call_args_list] == [(3,), (5,)]
    scheduler.stop.assert_awaited_once()
