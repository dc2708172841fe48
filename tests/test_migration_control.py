"""Tests for the cooperative pause/cancel token."""

import unittest

from orchestrator import MigrationControl


class TestMigrationControl(unittest.TestCase):
    def setUp(self):
        self.control = MigrationControl()

    def test_initially_running(self):
        self.assertFalse(self.control.should_stop())
        self.assertFalse(self.control.pause_requested)
        self.assertFalse(self.control.cancel_requested)

    def test_pause(self):
        """Repeated pause requests are harmless."""
        self.control.request_pause()
        self.control.request_pause()

        self.assertTrue(self.control.should_stop())
        self.assertTrue(self.control.pause_requested)
        self.assertFalse(self.control.cancel_requested)

    def test_cancel(self):
        self.control.request_cancel()

        self.assertTrue(self.control.should_stop())
        self.assertTrue(self.control.cancel_requested)

    def test_reset(self):
        self.control.request_pause()
        self.control.request_cancel()

        self.control.reset()

        self.assertFalse(self.control.should_stop())


if __name__ == '__main__':
    unittest.main()
