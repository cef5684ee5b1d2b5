"""
Tests for instance_lock.py: one engine per user installation.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from instance_lock import InstanceLock, lock_file_for


class TestInstanceLock(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_lock_file_per_user(self):
        self.assertNotEqual(lock_file_for("alice", self.data_dir), lock_file_for("bob", self.data_dir))
        self.assertEqual(lock_file_for("a/b", self.data_dir).name, ".streakguard_a_b.lock")

    def test_second_holder_is_refused(self):
        path = lock_file_for("alice", self.data_dir)
        first = InstanceLock(path)
        second = InstanceLock(path)
        try:
            self.assertTrue(first.acquire())
            self.assertEqual(first.existing_pid(), os.getpid())
            self.assertFalse(second.acquire())
            self.assertFalse(second.is_acquired())
        finally:
            first.release()
        self.assertTrue(second.acquire())
        second.release()

    def test_context_manager(self):
        path = lock_file_for("alice", self.data_dir)
        with InstanceLock(path) as lock:
            self.assertTrue(lock.is_acquired())
        self.assertFalse(lock.is_acquired())


if __name__ == '__main__':
    unittest.main()
