"""Tests for the reconciliation timer."""

import asyncio
import uuid

import pytest

from partners.billing.reconciliation import ReconciliationTimer

pytestmark = pytest.mark.asyncio


class TestReconciliationTimer:
    """arm / disarm / fire semantics."""

    async def test_fires_once_after_delay(self):
        timer = ReconciliationTimer(delay_seconds=0.01)
        attempt_id = uuid.uuid4()
        calls = []

        async def callback(fired_id):
            calls.append(fired_id)

        timer.arm(attempt_id, callback)
        assert timer.pending(attempt_id)
        await asyncio.sleep(0.05)

        assert calls == [attempt_id]
        assert not timer.pending(attempt_id)

    async def test_disarm_prevents_fire(self):
        timer = ReconciliationTimer(delay_seconds=0.01)
        attempt_id = uuid.uuid4()
        calls = []

        async def callback(fired_id):
            calls.append(fired_id)

        timer.arm(attempt_id, callback)
        assert timer.disarm(attempt_id) is True
        await asyncio.sleep(0.05)

        assert calls == []
        assert timer.disarm(attempt_id) is False

    async def test_rearm_replaces_pending_check(self):
        timer = ReconciliationTimer(delay_seconds=0.01)
        attempt_id = uuid.uuid4()
        calls = []

        async def callback(fired_id):
            calls.append(fired_id)

        timer.arm(attempt_id, callback)
        timer.arm(attempt_id, callback)
        timer.arm(attempt_id, callback)
        await asyncio.sleep(0.05)

        assert calls == [attempt_id]

    async def test_explicit_delay_overrides_default(self):
        timer = ReconciliationTimer(delay_seconds=60)
        attempt_id = uuid.uuid4()
        calls = []

        async def callback(fired_id):
            calls.append(fired_id)

        timer.arm(attempt_id, callback, delay=0.01)
        await asyncio.sleep(0.05)

        assert calls == [attempt_id]

    async def test_disarm_during_running_check_lets_it_finish(self):
        timer = ReconciliationTimer(delay_seconds=0)
        attempt_id = uuid.uuid4()
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def callback(fired_id):
            started.set()
            await release.wait()
            finished.append(fired_id)

        timer.arm(attempt_id, callback)
        await asyncio.wait_for(started.wait(), 1)

        assert timer.disarm(attempt_id) is False
        release.set()
        await asyncio.sleep(0.01)

        assert finished == [attempt_id]

    async def test_callback_error_is_contained(self, caplog):
        timer = ReconciliationTimer(delay_seconds=0)
        attempt_id = uuid.uuid4()

        async def callback(fired_id):
            raise RuntimeError("boom")

        timer.arm(attempt_id, callback)
        await asyncio.sleep(0.01)

        assert not timer.pending(attempt_id)
        assert any("Reconciliation check failed" in r.message for r in caplog.records)

    async def test_shutdown_cancels_everything(self):
        timer = ReconciliationTimer(delay_seconds=60)
        ids = [uuid.uuid4() for _ in range(3)]

        async def callback(fired_id):
            pass

        for attempt_id in ids:
            timer.arm(attempt_id, callback)
        await timer.shutdown()

        assert not any(timer.pending(attempt_id) for attempt_id in ids)
