"""
Tests — DispatchWorker timer loop, busy guard and gateway wiring
"""
import asyncio

import pytest

from core.dispatcher import CycleResult
from database.store_memory import InMemoryJobStore
from models.schemas import MessageStatus
from support import FakeSender, make_job
from worker.bootstrap import build_gateway
from worker.scheduler import DispatchWorker


class _SlowDispatcher:
    """Blocks inside run_cycle until released."""

    def __init__(self):
        self.calls = 0
        self.release = asyncio.Event()

    async def run_cycle(self):
        self.calls += 1
        await self.release.wait()
        return CycleResult(fetched=1)


class _FailingDispatcher:
    def __init__(self):
        self.calls = 0

    async def run_cycle(self):
        self.calls += 1
        raise RuntimeError("database unavailable")


class TestDispatchWorker:

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_noop(self):
        dispatcher = _SlowDispatcher()
        worker = DispatchWorker(dispatcher, poll_interval_s=10)

        first = asyncio.create_task(worker.tick())
        await asyncio.sleep(0)
        assert worker.busy
        assert await worker.tick() is None
        assert dispatcher.calls == 1

        dispatcher.release.set()
        result = await first
        assert result.fetched == 1
        assert not worker.busy

    @pytest.mark.asyncio
    async def test_cycle_error_is_contained(self):
        dispatcher = _FailingDispatcher()
        worker = DispatchWorker(dispatcher)
        assert await worker.tick() is None
        assert await worker.tick() is None
        assert dispatcher.calls == 2
        assert not worker.busy

    @pytest.mark.asyncio
    async def test_loop_keeps_ticking_after_errors(self):
        dispatcher = _FailingDispatcher()
        worker = DispatchWorker(dispatcher, poll_interval_s=0.01)
        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()
        assert dispatcher.calls >= 2
        assert not worker.running

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_tick(self):
        dispatcher = _SlowDispatcher()
        worker = DispatchWorker(dispatcher, poll_interval_s=0.01)
        await worker.start()
        await asyncio.sleep(0.05)
        assert worker.busy
        await worker.stop()
        assert dispatcher.calls == 1
        assert not worker.busy

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        worker = DispatchWorker(_SlowDispatcher(), poll_interval_s=10)
        await worker.start()
        task = worker._task
        await worker.start()
        assert worker._task is task
        await worker.stop()


class TestGatewayWiring:

    @pytest.mark.asyncio
    async def test_worker_sends_due_message(self, settings, reporter):
        store = InMemoryJobStore()
        sender = FakeSender()
        gateway = await build_gateway(settings, store=store, sender=sender)
        gateway.dispatcher.reporter = reporter
        job = await store.add_job(make_job())
        try:
            await gateway.worker.start()
            for _ in range(100):
                if reporter.reports:
                    break
                await asyncio.sleep(0.01)
        finally:
            await gateway.close()

        assert sender.sent == [(job.to_handle, job.body)]
        assert (await store.get_job(job.id)).status == MessageStatus.SENT
        assert reporter.statuses(job.id) == [MessageStatus.SENT]

    @pytest.mark.asyncio
    async def test_memory_backend_from_settings(self, settings):
        settings.database.store_backend = "memory"
        gateway = await build_gateway(settings, sender=FakeSender())
        try:
            assert isinstance(gateway.store, InMemoryJobStore)
            assert gateway.tracker.enabled is False
            assert gateway.worker.poll_interval_s == pytest.approx(0.01)
        finally:
            await gateway.close()
