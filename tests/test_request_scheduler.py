import asyncio
import unittest

from ledgerflow.core.errors import DataSourceError, ScanCancelledError
from ledgerflow.services.request_scheduler import RequestScheduler


class _FakeSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    """Fails `failures` times with DataSourceError, then returns value."""

    def __init__(self, failures: int, value="ok") -> None:
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise DataSourceError(f"boom {self.calls}")
        return self.value


class RequestSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def _make(self, **kw) -> RequestScheduler:
        self.sleep = _FakeSleep()
        kw.setdefault("backoff_base", 1.0)
        kw.setdefault("backoff_cap", 10.0)
        return RequestScheduler(sleep=self.sleep, **kw)

    async def test_retries_until_success(self) -> None:
        sched = self._make()
        op = _Flaky(failures=2)

        result = await sched.enqueue(op, max_retries=3)

        self.assertEqual(result, "ok")
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleep.delays, [1.0, 2.0])
        stats = sched.stats
        self.assertEqual(stats.completed, 1)
        self.assertEqual(stats.retried, 2)
        self.assertEqual(stats.failed, 0)
        self.assertTrue(sched.idle)

    async def test_always_failing_is_called_retries_plus_one_times(self) -> None:
        sched = self._make()
        op = _Flaky(failures=100)

        with self.assertRaises(DataSourceError):
            await sched.enqueue(op, max_retries=2)

        self.assertEqual(op.calls, 3)
        self.assertEqual(sched.stats.failed, 1)
        self.assertEqual(sched.stats.completed, 0)

    async def test_zero_retries_fails_immediately(self) -> None:
        sched = self._make()
        op = _Flaky(failures=1)

        with self.assertRaises(DataSourceError):
            await sched.enqueue(op, max_retries=0)

        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_backoff_is_capped(self) -> None:
        sched = self._make(backoff_base=1.0, backoff_cap=3.0)
        op = _Flaky(failures=4)

        await sched.enqueue(op, max_retries=4)

        self.assertEqual(self.sleep.delays, [1.0, 2.0, 3.0, 3.0])

    async def test_priority_then_insertion_order(self) -> None:
        sched = self._make(max_concurrent=1)
        gate = asyncio.Event()
        order = []

        def op(name):
            async def run():
                if name == "first":
                    await gate.wait()
                order.append(name)
                return name
            return run

        first = asyncio.create_task(sched.enqueue(op("first"), priority=0))
        await asyncio.sleep(0)
        rest = [
            asyncio.create_task(sched.enqueue(op("low"), priority=1)),
            asyncio.create_task(sched.enqueue(op("high-a"), priority=5)),
            asyncio.create_task(sched.enqueue(op("mid"), priority=3)),
            asyncio.create_task(sched.enqueue(op("high-b"), priority=5)),
        ]
        await asyncio.sleep(0)
        self.assertEqual(sched.stats.pending, 4)

        gate.set()
        await asyncio.gather(first, *rest)

        self.assertEqual(order, ["first", "high-a", "high-b", "mid", "low"])

    async def test_active_never_exceeds_max_concurrent(self) -> None:
        sched = self._make(max_concurrent=2)
        active = 0
        peak = 0

        async def op():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            for _ in range(3):
                await asyncio.sleep(0)
            active -= 1
            return True

        snapshots = []
        sched.subscribe(lambda st: snapshots.append(st.active))

        results = await asyncio.gather(*(sched.enqueue(op) for _ in range(6)))

        self.assertEqual(results, [True] * 6)
        self.assertEqual(peak, 2)
        self.assertTrue(all(a <= 2 for a in snapshots))
        self.assertEqual(sched.stats.completed, 6)

    async def test_cancel_drains_pending_and_rejects_new_work(self) -> None:
        sched = self._make(max_concurrent=1)
        gate = asyncio.Event()
        calls = []

        async def blocking():
            calls.append("blocking")
            await gate.wait()
            return "done"

        async def never():
            calls.append("never")
            return "x"

        inflight = asyncio.create_task(sched.enqueue(blocking))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        queued = [asyncio.create_task(sched.enqueue(never)) for _ in range(2)]
        await asyncio.sleep(0)

        sched.cancel("stop")

        for t in queued:
            with self.assertRaises(ScanCancelledError):
                await t
        with self.assertRaises(ScanCancelledError):
            await sched.enqueue(never)

        gate.set()
        self.assertEqual(await inflight, "done")
        self.assertEqual(calls, ["blocking"])
        self.assertEqual(sched.stats.cancelled, 2)
        self.assertTrue(sched.cancelled)

    async def test_cancel_during_backoff_fails_with_cancelled(self) -> None:
        sched = RequestScheduler()
        op = _Flaky(failures=100)

        async def cancelling_sleep(delay):
            sched.cancel()

        sched._sleep = cancelling_sleep

        with self.assertRaises(ScanCancelledError):
            await sched.enqueue(op, max_retries=3)
        self.assertEqual(op.calls, 1)
        self.assertEqual(sched.stats.failed, 0)

    async def test_reset_installs_fresh_token(self) -> None:
        sched = self._make()
        sched.cancel()
        old = sched.token

        sched.reset()

        self.assertIsNot(sched.token, old)
        self.assertFalse(sched.cancelled)
        self.assertEqual(await sched.enqueue(_Flaky(0, value=7)), 7)
        self.assertEqual(sched.stats.total, 1)

    async def test_reset_with_operation_in_flight_keeps_concurrency_cap(self) -> None:
        sched = self._make(max_concurrent=1)
        gate = asyncio.Event()
        running = 0
        peak = 0

        def op(wait):
            async def run():
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                if wait:
                    await gate.wait()
                for _ in range(3):
                    await asyncio.sleep(0)
                running -= 1
                return "ok"
            return run

        old = asyncio.create_task(sched.enqueue(op(True)))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.assertEqual(sched.stats.active, 1)

        sched.cancel("stop")
        sched.reset()
        self.assertEqual(sched.stats.active, 1)

        fresh = asyncio.gather(*(sched.enqueue(op(False)) for _ in range(3)))
        await asyncio.sleep(0)
        self.assertEqual(sched.stats.pending, 3)

        gate.set()
        self.assertEqual(await fresh, ["ok"] * 3)
        self.assertEqual(await old, "ok")
        self.assertEqual(peak, 1)
        stats = sched.stats
        self.assertEqual(stats.active, 0)
        self.assertEqual(stats.completed, 3)
        self.assertEqual(stats.total, 3)

    async def test_failure_after_reset_is_not_retried(self) -> None:
        sched = self._make(max_concurrent=1)
        gate = asyncio.Event()
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await gate.wait()
            raise DataSourceError("late")

        old = asyncio.create_task(sched.enqueue(failing, max_retries=3))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        sched.reset()
        gate.set()

        with self.assertRaises(ScanCancelledError):
            await old
        self.assertEqual(calls, 1)
        self.assertEqual(self.sleep.delays, [])
        self.assertEqual(sched.stats.failed, 0)
        self.assertEqual(sched.stats.active, 0)

    async def test_listener_errors_are_logged_not_raised(self) -> None:
        sched = self._make()
        seen = []

        def bad(_):
            raise RuntimeError("listener bug")

        sched.subscribe(bad)
        good = sched.subscribe(seen.append)

        with self.assertLogs("ledgerflow.services.request_scheduler", level="ERROR"):
            self.assertEqual(await sched.enqueue(_Flaky(0)), "ok")

        self.assertTrue(seen)
        self.assertEqual(seen[-1].completed, 1)
        self.assertEqual(seen[-1].percent, 100)

        sched.unsubscribe(good)
        count = len(seen)
        sched.unsubscribe(bad)
        await sched.enqueue(_Flaky(0))
        self.assertEqual(len(seen), count)

    async def test_rejects_bad_concurrency(self) -> None:
        with self.assertRaises(ValueError):
            RequestScheduler(max_concurrent=0)


if __name__ == "__main__":
    unittest.main()
