"""Tests for camrelay._tasks — supervised background tasks.

Test Techniques Used:
    - State-based Testing: task tracking until completion
    - Log Assertion: escaped exceptions are logged
    - State Transition Testing: cancellation at shutdown
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from camrelay._tasks import BackgroundTasks


class TestBackgroundTasks:
    """Technique: State-based Testing."""

    async def test_spawn_tracks_until_done(self) -> None:
        tasks = BackgroundTasks()
        gate = asyncio.Event()

        async def work() -> None:
            await gate.wait()

        tasks.spawn(work(), name="work")
        assert len(tasks) == 1

        gate.set()
        await tasks.join()

        assert len(tasks) == 0

    async def test_join_waits_for_tasks_spawned_by_tasks(self) -> None:
        tasks = BackgroundTasks()
        done: list[str] = []

        async def child() -> None:
            await asyncio.sleep(0)
            done.append("child")

        async def parent() -> None:
            tasks.spawn(child(), name="child")
            done.append("parent")

        tasks.spawn(parent(), name="parent")
        await tasks.join()

        assert done == ["parent", "child"]

    async def test_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        tasks = BackgroundTasks()

        async def boom() -> None:
            msg = "kaput"
            raise RuntimeError(msg)

        with caplog.at_level(logging.ERROR, logger="camrelay._tasks"):
            tasks.spawn(boom(), name="boom")
            await tasks.join()

        assert "Background task boom failed: kaput" in caplog.text

    async def test_cancel_all(self) -> None:
        tasks = BackgroundTasks()
        started = asyncio.Event()

        async def forever() -> None:
            started.set()
            await asyncio.Event().wait()

        task = tasks.spawn(forever(), name="forever")
        await started.wait()

        await tasks.cancel_all()

        assert task.cancelled()
        assert len(tasks) == 0

    async def test_join_with_nothing_spawned(self) -> None:
        await BackgroundTasks().join()
