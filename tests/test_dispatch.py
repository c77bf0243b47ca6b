"""Tests for the background dispatcher."""

import asyncio

import pytest

from botique.dispatch import BackgroundDispatcher


@pytest.mark.asyncio
async def test_submit_returns_before_work_runs():
    dispatcher = BackgroundDispatcher()
    done = []

    async def work(value):
        await asyncio.sleep(0)
        done.append(value)

    dispatcher.submit(work, 1, name="work")
    assert done == []
    assert dispatcher.pending == 1

    await dispatcher.drain()
    assert done == [1]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_failures_are_contained():
    dispatcher = BackgroundDispatcher()

    async def boom():
        raise RuntimeError("boom")

    task = dispatcher.submit(boom, name="boom")
    await dispatcher.drain()

    assert task.result() is None


@pytest.mark.asyncio
async def test_shutdown_cancels_stragglers():
    dispatcher = BackgroundDispatcher()

    async def forever():
        await asyncio.sleep(3600)

    task = dispatcher.submit(forever, name="forever")
    await dispatcher.shutdown(timeout=0.01)

    assert task.cancelled()
