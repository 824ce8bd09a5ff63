"""
Unit tests for the guest quota tracker, including concurrent reservations.
"""

import threading
import unittest

from support import make_redis_pair

from services.guest_quota import GuestQuotaTracker


class TestGuestQuotaTracker(unittest.TestCase):

    def setUp(self):
        self.redis_client, _ = make_redis_pair()
        self.quota = GuestQuotaTracker(self.redis_client, limit=5)

    def test_five_sends_allowed_then_denied(self):
        for expected in range(1, 6):
            decision = self.quota.check_and_reserve("guest-1")
            self.assertTrue(decision.allowed)
            self.assertEqual(decision.count, expected)
            self.assertEqual(self.quota.count("guest-1"), expected)

        denied = self.quota.check_and_reserve("guest-1")
        self.assertFalse(denied.allowed)
        self.assertEqual(denied.count, 5)
        self.assertEqual(self.quota.count("guest-1"), 5)

    def test_guests_are_counted_separately(self):
        self.quota.check_and_reserve("guest-1")
        self.assertEqual(self.quota.count("guest-1"), 1)
        self.assertEqual(self.quota.count("guest-2"), 0)

    def test_concurrent_reservations_at_boundary(self):
        for _ in range(4):
            self.quota.check_and_reserve("guest-1")

        barrier = threading.Barrier(2)
        decisions = []
        lock = threading.Lock()

        def reserve():
            barrier.wait()
            decision = self.quota.check_and_reserve("guest-1")
            with lock:
                decisions.append(decision)

        threads = [threading.Thread(target=reserve) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(sorted(d.allowed for d in decisions), [False, True])
        self.assertEqual(self.quota.count("guest-1"), 5)

    def test_release_refunds_but_never_goes_negative(self):
        self.quota.check_and_reserve("guest-1")
        self.assertEqual(self.quota.release("guest-1"), 0)
        self.assertEqual(self.quota.release("guest-1"), 0)
        self.assertEqual(self.quota.count("guest-1"), 0)

    def test_status_reports_remaining(self):
        for _ in range(3):
            self.quota.check_and_reserve("guest-1")
        status = self.quota.status("guest-1")
        self.assertEqual((status.sent_count, status.limit, status.remaining), (3, 5, 2))


if __name__ == "__main__":
    unittest.main()
