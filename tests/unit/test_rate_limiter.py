"""
Unit tests for the token bucket.
"""

import threading
import time
import unittest

from photomark.core.config import RateLimitConfig
from photomark.core.rate_limiter import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTokenBucket(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.bucket = TokenBucket(RateLimitConfig(capacity=2, window=10.0), clock=self.clock)

    def test_starts_full(self):
        self.assertTrue(self.bucket.try_acquire())
        self.assertTrue(self.bucket.try_acquire())
        self.assertFalse(self.bucket.try_acquire())

    def test_refills_over_time(self):
        self.bucket.try_acquire()
        self.bucket.try_acquire()
        self.clock.advance(4.5)
        self.assertFalse(self.bucket.try_acquire())
        self.clock.advance(0.75)
        self.assertTrue(self.bucket.try_acquire())

    def test_never_exceeds_capacity(self):
        self.clock.advance(1000)
        self.assertAlmostEqual(self.bucket.available, 2.0)

    def test_refund(self):
        self.bucket.try_acquire()
        self.bucket.try_acquire()
        self.bucket.refund()
        self.assertTrue(self.bucket.try_acquire())

    def test_acquire_timeout(self):
        self.bucket.try_acquire()
        self.bucket.try_acquire()
        self.assertFalse(self.bucket.acquire(timeout=0.05))

    def test_acquire_wakes_on_cancel(self):
        self.bucket.try_acquire()
        self.bucket.try_acquire()
        cancel = threading.Event()
        result = {}

        def waiter():
            result["acquired"] = self.bucket.acquire(cancel_event=cancel)

        t = threading.Thread(target=waiter, daemon=True)
        t.start()
        time.sleep(0.05)
        cancel.set()
        self.bucket.notify()
        t.join(timeout=2)
        self.assertFalse(t.is_alive())
        self.assertFalse(result["acquired"])

    def test_acquire_wakes_on_refund(self):
        self.bucket.try_acquire()
        self.bucket.try_acquire()
        result = {}

        def waiter():
            result["acquired"] = self.bucket.acquire(timeout=5)

        t = threading.Thread(target=waiter, daemon=True)
        t.start()
        time.sleep(0.05)
        self.bucket.refund()
        t.join(timeout=2)
        self.assertTrue(result["acquired"])


if __name__ == "__main__":
    unittest.main()
