from __future__ import annotations

import unittest

from queuematic.security.rate_limit import LoginRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class LoginRateLimiterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = LoginRateLimiter(max_attempts=3, window_seconds=60, clock=self.clock)

    def test_blocks_after_max_attempts_in_window(self) -> None:
        self.assertEqual([self.limiter.hit('ip:alice') for _ in range(4)], [True, True, True, False])
        self.assertTrue(self.limiter.hit('ip:bob'))

    def test_window_expiry_allows_new_attempts(self) -> None:
        for _ in range(4):
            self.limiter.hit('ip:alice')
        self.assertEqual(self.limiter.retry_after('ip:alice'), 60)

        self.clock.value += 61
        self.assertTrue(self.limiter.hit('ip:alice'))

    def test_reset_clears_key(self) -> None:
        for _ in range(3):
            self.limiter.hit('ip:alice')
        self.limiter.reset('ip:alice')
        self.assertTrue(self.limiter.hit('ip:alice'))
        self.assertEqual(self.limiter.retry_after('ip:nobody'), 0)


if __name__ == '__main__':
    unittest.main()
