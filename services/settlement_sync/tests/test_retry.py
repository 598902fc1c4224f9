import unittest

from services.settlement_sync.retry import BackoffPolicy, retry_async
from services.settlement_sync.tests.fakes import RecordingSleep


class BackoffPolicyTests(unittest.TestCase):
    def test_linear_delay_grows_with_attempt(self) -> None:
        policy = BackoffPolicy(max_attempts=5, base_delay=2.0)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [2.0, 4.0, 6.0])

    def test_exponential_delay_uses_multiplier(self) -> None:
        policy = BackoffPolicy(max_attempts=5, base_delay=1.0, multiplier=3.0, growth='exponential')
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [1.0, 3.0, 9.0])

    def test_zero_base_delay_never_waits(self) -> None:
        self.assertEqual(BackoffPolicy(max_attempts=3, base_delay=0).delay_for(2), 0.0)


class RetryAsyncTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_after_transient_failures(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError('boom')
            return 'ok'

        result = await retry_async(flaky, BackoffPolicy(max_attempts=3, base_delay=1.5), sleep=sleep)

        self.assertEqual(result, 'ok')
        self.assertEqual(calls, 3)
        self.assertEqual(sleep.delays, [1.5, 3.0])

    async def test_raises_last_error_after_max_attempts(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError(f'attempt {calls}')

        with self.assertRaisesRegex(RuntimeError, 'attempt 4'):
            await retry_async(broken, BackoffPolicy(max_attempts=4, base_delay=1.0), sleep=sleep)

        self.assertEqual(calls, 4)
        self.assertEqual(len(sleep.delays), 3)

    async def test_should_retry_false_stops_immediately(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise ValueError('fatal')

        with self.assertRaises(ValueError):
            await retry_async(
                broken,
                BackoffPolicy(max_attempts=5, base_delay=1.0),
                should_retry=lambda exc: not isinstance(exc, ValueError),
                sleep=sleep
            )

        self.assertEqual(calls, 1)
        self.assertEqual(sleep.delays, [])
