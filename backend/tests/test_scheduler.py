"""Tests for the bounded scheduler."""

import asyncio
import random

import pytest

from packetflow.services.cancellation import CancellationToken
from packetflow.services.errors import ProcessingCancelled
from packetflow.services.scheduler import Scheduler, clamp_concurrency


class Probe:
    """Counts concurrent calls."""

    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0
        self.order = []

    def call(self, label, delay=0.0):
        async def _call():
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.order.append(label)
            try:
                await asyncio.sleep(delay)
                return label
            finally:
                self.in_flight -= 1
        return _call


class TestScheduler:
    @pytest.fixture
    async def scheduler(self):
        scheduler = Scheduler(concurrency=2)
        await scheduler.start()
        yield scheduler
        await scheduler.stop()

    def test_clamp(self):
        assert clamp_concurrency(0) == 1
        assert clamp_concurrency(5) == 5
        assert clamp_concurrency(50) == 10

    @pytest.mark.asyncio
    async def test_returns_call_result(self, scheduler):
        probe = Probe()
        assert await scheduler.run(probe.call("a")) == "a"

    @pytest.mark.asyncio
    async def test_propagates_call_errors(self, scheduler):
        async def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await scheduler.run(boom)
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_never_exceeds_limit(self, seed):
        """Randomized packet/document counts never push in-flight calls over the limit."""
        rng = random.Random(seed)
        limit = rng.randint(1, 10)
        scheduler = Scheduler(concurrency=limit)
        await scheduler.start()
        probe = Probe()
        try:
            calls = [
                scheduler.run(probe.call(f"p{p}d{d}", delay=rng.random() / 200), packet_id=f"p{p}")
                for p in range(rng.randint(1, 6))
                for d in range(rng.randint(1, 8))
            ]
            await asyncio.gather(*calls)
        finally:
            await scheduler.stop()

        assert probe.max_in_flight <= limit
        assert scheduler.peak_in_flight <= limit

    @pytest.mark.asyncio
    async def test_fifo_admission(self):
        scheduler = Scheduler(concurrency=1)
        await scheduler.start()
        probe = Probe()
        try:
            await asyncio.gather(*(scheduler.run(probe.call(i)) for i in range(6)))
        finally:
            await scheduler.stop()
        assert probe.order == list(range(6))

    @pytest.mark.asyncio
    async def test_on_start_runs_when_admitted(self, scheduler):
        started = []
        probe = Probe()
        await scheduler.run(probe.call("a"), on_start=lambda: started.append("a"))
        assert started == ["a"]

    @pytest.mark.asyncio
    async def test_cancelled_token_drops_pending_item(self):
        scheduler = Scheduler(concurrency=1)
        await scheduler.start()
        gate = asyncio.Event()
        executed = []

        async def blocker():
            await gate.wait()

        async def never():
            executed.append("never")

        try:
            first = asyncio.create_task(scheduler.run(blocker))
            token = CancellationToken()
            second = asyncio.create_task(scheduler.run(never, token=token))
            await asyncio.sleep(0.01)
            assert scheduler.pending_count == 1

            token.cancel("cancelled")
            with pytest.raises(ProcessingCancelled):
                await second

            gate.set()
            await first
        finally:
            await scheduler.stop()
        assert executed == []
        assert scheduler.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancel_packet_leaves_other_packets(self):
        scheduler = Scheduler(concurrency=1)
        await scheduler.start()
        gate = asyncio.Event()
        probe = Probe()

        async def blocker():
            await gate.wait()
            return "blocker"

        try:
            first = asyncio.create_task(scheduler.run(blocker, packet_id="other"))
            doomed = asyncio.create_task(scheduler.run(probe.call("doomed"), packet_id="p1"))
            kept = asyncio.create_task(scheduler.run(probe.call("kept"), packet_id="p2"))
            await asyncio.sleep(0.01)

            assert scheduler.cancel_packet("p1") == 1
            gate.set()

            assert await first == "blocker"
            assert await kept == "kept"
            with pytest.raises(ProcessingCancelled):
                await doomed
        finally:
            await scheduler.stop()
        assert probe.order == ["kept"]

    @pytest.mark.asyncio
    async def test_cancel_in_flight_call(self, scheduler):
        token = CancellationToken()

        async def slow():
            await asyncio.sleep(10)

        task = asyncio.create_task(scheduler.run(slow, token=token))
        await asyncio.sleep(0.01)
        assert scheduler.in_flight == 1

        token.cancel("paused")
        with pytest.raises(ProcessingCancelled):
            await task
        await asyncio.sleep(0)
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_raise_concurrency_at_runtime(self):
        scheduler = Scheduler(concurrency=1)
        await scheduler.start()
        probe = Probe()
        try:
            assert await scheduler.set_concurrency(4) == 4
            await asyncio.gather(*(scheduler.run(probe.call(i, delay=0.01)) for i in range(8)))
        finally:
            await scheduler.stop()
        assert probe.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_lower_concurrency_at_runtime(self):
        scheduler = Scheduler(concurrency=5)
        await scheduler.start()
        probe = Probe()
        try:
            await scheduler.set_concurrency(2)
            await asyncio.gather(*(scheduler.run(probe.call(i, delay=0.01)) for i in range(8)))
        finally:
            await scheduler.stop()
        assert probe.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_lowered_limit_holds_while_calls_in_flight(self):
        """New work waits until in-flight calls drop below a freshly lowered limit."""
        scheduler = Scheduler(concurrency=4)
        await scheduler.start()
        gates = [asyncio.Event() for _ in range(4)]
        over_limit = []

        def held(gate):
            async def _held():
                await gate.wait()
            return _held

        def admitted():
            if scheduler.in_flight > scheduler.concurrency:
                over_limit.append((scheduler.in_flight, scheduler.concurrency))

        try:
            blockers = [asyncio.create_task(scheduler.run(held(gate))) for gate in gates]
            await asyncio.sleep(0.01)
            assert scheduler.in_flight == 4

            await scheduler.set_concurrency(2)
            probe = Probe()
            queued = [
                asyncio.create_task(scheduler.run(probe.call(i, delay=0.01), on_start=admitted))
                for i in range(3)
            ]

            for gate in gates[:2]:
                gate.set()
                await asyncio.sleep(0.02)
                assert probe.order == []
            assert scheduler.pending_count == 3

            for gate in gates[2:]:
                gate.set()
            await asyncio.gather(*blockers, *queued)
        finally:
            await scheduler.stop()

        assert over_limit == []
        assert probe.max_in_flight <= 2
        assert sorted(probe.order) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_set_concurrency_clamps(self, scheduler):
        assert await scheduler.set_concurrency(25) == 10
        assert scheduler.concurrency == 10

    @pytest.mark.asyncio
    async def test_run_requires_start(self):
        scheduler = Scheduler()
        with pytest.raises(RuntimeError):
            await scheduler.run(Probe().call("a"))

    @pytest.mark.asyncio
    async def test_status(self, scheduler):
        await scheduler.run(Probe().call("a"))
        status = scheduler.get_status()
        assert status["running"] is True
        assert status["concurrency"] == 2
        assert status["completed"] == 1
