"""Tests for fire-and-forget task tracking."""

import asyncio

from marketplace_assistant.application.background import BackgroundTasks


async def test_drain_waits_for_spawned_tasks():
    tasks = BackgroundTasks()
    done = []

    async def work():
        await asyncio.sleep(0.01)
        done.append(True)

    tasks.spawn(work(), name="work")
    assert len(tasks) == 1

    await tasks.drain()
    assert done == [True]
    assert len(tasks) == 0


async def test_failed_task_does_not_break_drain():
    tasks = BackgroundTasks()

    async def boom():
        raise RuntimeError("disk full")

    tasks.spawn(boom(), name="boom")
    await tasks.drain()
    assert len(tasks) == 0
