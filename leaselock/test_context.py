#!/usr/bin/env python
import unittest
from leaselock import locker
from leaselock.errors import LockCurrentlyUnavailableError
from leaselock.test_client import make_client, stored_lock

class LockContextTest(unittest.TestCase):

    def setUp(self):
        self.client = make_client()

    def test_lock_is_held_within_context(self):
        with locker(client=self.client, name='customer1', payload=b'data') as context:
            name = context.lock.unique_identifier
            self.assertIn(name, self.client.locks)
            self.assertEqual(b'data', self.client.store.records[name].payload)
        self.assertNotIn(name, self.client.locks)
        self.assertEqual({}, self.client.store.records)

    def test_lock_is_released_on_error(self):
        with self.assertRaises(KeyError):
            with locker(client=self.client, name='customer1', delete_on_release=False) as context:
                raise KeyError('failure')
        self.assertTrue(context.lock.is_released)
        self.assertTrue(self.client.store.records[context.lock.unique_identifier].is_released)

    def test_lost_lock_is_reported(self):
        with self.assertLogs('leaselock.context', level='WARNING'):
            with locker(client=self.client, name='customer1') as context:
                name = context.lock.unique_identifier
                self.client.store.records[name] = stored_lock('stolen')

    def test_lock_not_granted(self):
        self.client.store.records['customer1|'] = stored_lock('rvn')
        context = locker(client=self.client, name='customer1', skip_blocking_wait=True)
        with self.assertRaises(LockCurrentlyUnavailableError):
            with context:
                self.fail("the lock should not have been acquired")
        self.assertIsNone(context.lock)
        self.assertEqual('rvn', self.client.store.records['customer1|'].version)

#---------------------------------------------------------------------------#
# main
#---------------------------------------------------------------------------#
if __name__ == "__main__":
    unittest.main()
