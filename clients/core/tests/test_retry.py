import logging
import unittest

from nukenote.retry import retry_async, total_attempts


class RetryAsyncTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.sleeps = []

    async def _sleep(self, delay):
        self.sleeps.append(delay)

    async def test_attempt_budget_and_delay_schedule(self):
        calls = []

        async def operation():
            calls.append(1)
            raise RuntimeError(f"fail {len(calls)}")

        with self.assertLogs("nukenote.retry", level="WARNING") as logs:
            with self.assertRaisesRegex(RuntimeError, "fail 4"):
                await retry_async(operation, retries=1, delays=(0.1, 0.5, 1.0), sleep=self._sleep)

        self.assertEqual(len(calls), 4)
        self.assertEqual(self.sleeps, [0.1, 0.5, 1.0])
        self.assertEqual(len(logs.records), 3)

    async def test_last_delay_is_reused(self):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 5:
                raise RuntimeError("again")
            return "ok"

        result = await retry_async(operation, retries=4, delays=(0.2,), sleep=self._sleep)

        self.assertEqual(result, "ok")
        self.assertEqual(self.sleeps, [0.2, 0.2, 0.2, 0.2])

    async def test_first_success_does_not_sleep(self):
        async def operation():
            return 42

        self.assertEqual(await retry_async(operation, sleep=self._sleep), 42)
        self.assertEqual(self.sleeps, [])

    async def test_zero_delays_skip_sleep(self):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("once")
            return "done"

        await retry_async(operation, retries=1, delays=(0,), sleep=self._sleep)
        self.assertEqual(self.sleeps, [])

    async def test_retry_if_false_raises_immediately(self):
        calls = []

        async def operation():
            calls.append(1)
            raise ValueError("fatal")

        with self.assertRaises(ValueError):
            await retry_async(operation, retry_if=lambda exc: False, sleep=self._sleep)
        self.assertEqual(len(calls), 1)

    async def test_should_abort_stops_retrying(self):
        calls = []

        async def operation():
            calls.append(1)
            raise RuntimeError("closed")

        with self.assertRaises(RuntimeError):
            await retry_async(operation, retries=5, should_abort=lambda: True, sleep=self._sleep)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleeps, [])

    async def test_custom_logger_receives_warnings(self):
        logger = logging.getLogger("tests.retry.custom")
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("flaky")
            return True

        with self.assertLogs(logger, level="WARNING") as logs:
            await retry_async(operation, logger=logger, sleep=self._sleep)
        self.assertIn("attempt 1/4", logs.output[0])

    async def test_negative_budget_still_runs_once_and_reraises(self):
        calls = []

        async def operation():
            calls.append(1)
            raise KeyError("only")

        with self.assertRaises(KeyError):
            await retry_async(operation, retries=-3, delays=(), sleep=self._sleep)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleeps, [])

    def test_total_attempts(self):
        self.assertEqual(total_attempts(2, (0.1, 0.5, 1.0)), 4)
        self.assertEqual(total_attempts(5, (0.1,)), 6)
        self.assertEqual(total_attempts(0, ()), 1)
