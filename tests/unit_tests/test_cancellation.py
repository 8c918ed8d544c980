"""
Unit tests for the cancellation token.
"""

import threading
import time
import unittest

from cancellation import CancellationToken
from errors import MigrationCancelled


class TestCancellationToken(unittest.TestCase):
    """Test cooperative cancellation."""

    def test_not_cancelled_by_default(self):
        token = CancellationToken()
        self.assertFalse(token.cancelled)
        token.raise_if_cancelled()

    def test_cancel_raises_with_reason(self):
        token = CancellationToken()
        token.cancel("SIGINT received")

        with self.assertRaises(MigrationCancelled) as ctx:
            token.raise_if_cancelled()

        self.assertEqual(str(ctx.exception), "SIGINT received")

    def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        self.assertEqual(token.reason, "first")

    def test_sleep_interrupted_by_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("abort",)).start()

        start = time.monotonic()
        with self.assertRaises(MigrationCancelled):
            token.sleep(30)

        self.assertLess(time.monotonic() - start, 5)

    def test_sleep_zero_returns(self):
        CancellationToken().sleep(0)

    def test_child_follows_parent(self):
        parent = CancellationToken()
        child = parent.child()

        parent.cancel("shutdown")

        self.assertTrue(child.cancelled)
        with self.assertRaises(MigrationCancelled) as ctx:
            child.raise_if_cancelled()
        self.assertEqual(str(ctx.exception), "shutdown")

    def test_child_cancel_does_not_propagate_up(self):
        parent = CancellationToken()
        child = parent.child()

        child.cancel("worker failed")

        self.assertTrue(child.cancelled)
        self.assertFalse(parent.cancelled)

    def test_child_sleep_interrupted_by_parent(self):
        parent = CancellationToken()
        child = parent.child()
        threading.Timer(0.05, parent.cancel, args=("abort",)).start()

        with self.assertRaises(MigrationCancelled):
            child.sleep(30)


if __name__ == "__main__":
    unittest.main()
