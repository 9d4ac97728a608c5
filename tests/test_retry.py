import unittest

from core.errors import ConnectivityError, StatementError
from core.retry import RetryPolicy, execute_with_retry, is_transient


class Flaky:
    """Callable that fails a fixed number of times before returning"""

    def __init__(self, failures, error_factory=lambda: StatementError("deadlock", transient=True, number=1205)):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "done"


class TestExecuteWithRetry(unittest.TestCase):

    def setUp(self):
        self.sleeps = []

    def test_success_first_time_does_not_sleep(self):
        operation = Flaky(0)
        self.assertEqual(execute_with_retry(operation, RetryPolicy(), sleep=self.sleeps.append), "done")
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_delays_grow_exponentially(self):
        operation = Flaky(2)
        result = execute_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=1.0),
                                    sleep=self.sleeps.append)
        self.assertEqual(result, "done")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_last_error_is_raised_when_attempts_run_out(self):
        operation = Flaky(10)
        with self.assertRaises(StatementError):
            execute_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=0.5), sleep=self.sleeps.append)
        self.assertEqual(operation.calls, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_non_retryable_error_is_raised_immediately(self):
        operation = Flaky(1, lambda: StatementError("Conversion failed", transient=False, number=245))
        policy = RetryPolicy(max_attempts=5, retryable=is_transient)
        with self.assertRaises(StatementError):
            execute_with_retry(operation, policy, sleep=self.sleeps.append)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_single_attempt_policy_never_sleeps(self):
        operation = Flaky(1)
        with self.assertRaises(StatementError):
            execute_with_retry(operation, RetryPolicy(max_attempts=1), sleep=self.sleeps.append)
        self.assertEqual(self.sleeps, [])

    def test_custom_multiplier(self):
        operation = Flaky(3)
        execute_with_retry(operation, RetryPolicy(max_attempts=4, base_delay=2.0, multiplier=3.0),
                           sleep=self.sleeps.append)
        self.assertEqual(self.sleeps, [2.0, 6.0, 18.0])


class TestRetryPolicy(unittest.TestCase):

    def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_negative_delay(self):
        with self.assertRaises(ValueError):
            RetryPolicy(base_delay=-1)

    def test_is_transient(self):
        self.assertTrue(is_transient(StatementError("lock timeout", transient=True, number=1222)))
        self.assertFalse(is_transient(StatementError("bad data", transient=False)))
        self.assertTrue(is_transient(ConnectivityError("network reset")))
        self.assertTrue(is_transient(OSError("socket closed")))


if __name__ == '__main__':
    unittest.main()
