#!/usr/bin/env python
import unittest
import threading
from threading import Event, Thread
from mock import Mock
from botocore.exceptions import ClientError
from leaselock.errors import ConditionFailedError, LockNotGrantedError
from leaselock.lock import LockItem
from leaselock.store import Condition
from leaselock.schema import LockSchema
from leaselock.test_client import OWNER, make_client
from leaselock.testing import MemoryLockStore
from leaselock.worker import HeartbeatWorker

def service_unavailable():
    response = {
        'Error': { 'Code': 'ServiceUnavailable', 'Message': 'Service Unavailable.' },
        'ResponseMetadata': { 'HTTPStatusCode': 503 },
    }
    return ClientError(response, 'UpdateItem')


class SendHeartbeatTest(unittest.TestCase):

    def setUp(self):
        self.store  = Mock()
        self.client = make_client(store=self.store)

    def make_item(self, client=None, **params):
        client = client or self.client
        item = {
            'client':        client,
            'partition_key': 'a',
            'payload':       b'data',
            'owner':         OWNER,
            'duration':      10000,
            'timestamp':     client.policy.now,
            'version':       'rvn',
        }
        item.update(params)
        return LockItem(**item)

    def test_delete_payload_with_payload(self):
        item = self.make_item()
        self.assertRaises(ValueError, self.client.send_heartbeat, item,
            payload=b'data', delete_payload=True)
        self.assertFalse(self.store.update_record.called)

    def test_expired_lock(self):
        item = self.make_item(duration=1, timestamp=2)
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, item, payload=b'data')
        self.assertFalse(self.store.update_record.called)

    def test_expired_lock_regardless_of_owner(self):
        item = self.make_item(owner='different owner', duration=1, timestamp=2)
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, item)

    def test_not_expired_and_different_owner(self):
        item = self.make_item(owner='different owner')
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, item, payload=b'data')
        self.assertFalse(self.store.update_record.called)

    def test_not_expired_same_owner_released(self):
        item = self.make_item(is_released=True)
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, item, payload=b'data')
        self.assertFalse(self.store.update_record.called)

    def test_not_expired_same_owner_not_released(self):
        item  = self.make_item()
        sink  = Mock()
        self.client.policy.advance(5000)
        self.client.send_heartbeat(item, payload=b'more data', metrics_sink=sink)

        partition_key, sort_key, fields, condition, removed = self.store.update_record.call_args[0]
        self.assertEqual(('a', None), (partition_key, sort_key))
        self.assertEqual(Condition.version_equals('rvn'), condition)
        self.assertEqual(b'more data', fields['data'])
        self.assertEqual([], removed)
        self.assertEqual(fields['recordVersionNumber'], item.version)
        self.assertNotEqual('rvn', item.version)
        self.assertEqual(self.client.policy.now, item.timestamp)
        self.assertEqual(b'more data', item.payload)
        sink.assert_called_once_with('heartbeat', item, 0)

    def test_failed_condition(self):
        item = self.make_item()
        self.client.locks.add(item)
        self.store.update_record.side_effect = ConditionFailedError('RVN changed')
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, item)
        self.assertNotIn(item.unique_identifier, self.client.locks)
        self.assertEqual('rvn', item.version)

    def test_service_unavailable_without_holding_lock(self):
        error = service_unavailable()
        self.store.update_record.side_effect = error
        item = self.make_item()
        timestamp = item.timestamp
        self.client.policy.advance(1)

        with self.assertRaises(ClientError) as context:
            self.client.send_heartbeat(item)
        self.assertIs(error, context.exception)
        self.assertEqual(timestamp, item.timestamp)
        self.assertEqual('rvn', item.version)

    def test_service_unavailable_while_holding_lock(self):
        error  = service_unavailable()
        store  = Mock()
        client = make_client(store=store, hold_lock_on_service_unavailable=True)
        store.update_record.side_effect = error
        item = self.make_item(client=client)
        timestamp = item.timestamp
        client.policy.advance(1)

        with self.assertRaises(ClientError) as context:
            client.send_heartbeat(item)
        self.assertIs(error, context.exception)
        self.assertGreater(item.timestamp, timestamp)
        self.assertEqual('rvn', item.version)

    def test_other_errors_do_not_hold_lock(self):
        store  = Mock()
        client = make_client(store=store, hold_lock_on_service_unavailable=True)
        store.update_record.side_effect = ClientError({ 'Error': { 'Code': 'ThrottlingException' } }, 'UpdateItem')
        item = self.make_item(client=client)
        timestamp = item.timestamp
        client.policy.advance(1)

        self.assertRaises(ClientError, client.send_heartbeat, item)
        self.assertEqual(timestamp, item.timestamp)


class StoredHeartbeatTest(unittest.TestCase):

    def setUp(self):
        self.client = make_client()
        self.lock   = self.client.acquire_lock('customer1', payload=b'data')
        self.name   = self.lock.unique_identifier

    def test_heartbeat_renews_version(self):
        version = self.lock.version
        self.client.policy.advance(9000)
        self.lock.renew()
        self.assertNotEqual(version, self.lock.version)
        self.assertEqual(self.lock.version, self.client.store.records[self.name].version)

        self.client.policy.advance(9000)
        self.assertFalse(self.lock.is_expired())

    def test_heartbeat_after_lease_lapsed(self):
        self.client.policy.advance(10001)
        self.assertRaises(LockNotGrantedError, self.lock.renew)
        self.assertNotIn(self.name, self.client.locks)

    def test_heartbeat_after_lock_was_taken(self):
        stolen = self.client.store.records[self.name]._replace(version='stolen', owner='other')
        self.client.store.records[self.name] = stolen
        self.assertRaises(LockNotGrantedError, self.lock.renew)
        self.assertNotIn(self.name, self.client.locks)

    def test_heartbeat_deletes_payload(self):
        self.lock.renew(delete_payload=True)
        self.assertIsNone(self.lock.payload)
        self.assertIsNone(self.client.store.records[self.name].payload)

    def test_heartbeat_changes_lease_duration(self):
        self.lock.renew(lease_duration=20000)
        self.assertEqual(20000, self.lock.duration)
        self.assertEqual(20000, self.client.store.records[self.name].duration)

    def test_ensure(self):
        version = self.lock.version
        self.lock.ensure(30000)
        self.assertEqual(30000, self.lock.duration)
        self.assertNotEqual(version, self.lock.version)


class ReleaseLockTest(unittest.TestCase):

    def setUp(self):
        self.client = make_client()

    def test_release_deletes_lock(self):
        lock = self.client.acquire_lock('customer1')
        self.assertTrue(self.client.release_lock(lock))
        self.assertTrue(lock.is_released)
        self.assertNotIn(lock.unique_identifier, self.client.locks)
        self.assertEqual({}, self.client.store.records)
        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, lock)

    def test_release_marks_lock_released(self):
        lock = self.client.acquire_lock('customer1', delete_on_release=False)
        self.assertTrue(lock.release(payload=b'done'))
        record = self.client.store.records[lock.unique_identifier]
        self.assertTrue(record.is_released)
        self.assertEqual(b'done', record.payload)

    def test_release_overrides_delete_flag(self):
        lock = self.client.acquire_lock('customer1')
        self.assertTrue(self.client.release_lock(lock, delete=False))
        self.assertTrue(self.client.store.records[lock.unique_identifier].is_released)

    def test_release_twice(self):
        lock = self.client.acquire_lock('customer1')
        self.assertTrue(self.client.release_lock(lock))
        self.assertFalse(self.client.release_lock(lock))

    def test_release_lock_taken_by_someone_else(self):
        lock = self.client.acquire_lock('customer1')
        name = lock.unique_identifier
        self.client.store.records[name] = self.client.store.records[name]._replace(version='stolen')
        self.assertFalse(self.client.release_lock(lock))
        self.assertTrue(lock.is_released)
        self.assertNotIn(name, self.client.locks)
        self.assertEqual('stolen', self.client.store.records[name].version)

    def test_release_lock_of_other_owner(self):
        store  = Mock()
        client = make_client(store=store)
        item   = LockItem(client=client, partition_key='a', owner='different owner',
            duration=10000, timestamp=client.policy.now, version='rvn')
        self.assertFalse(client.release_lock(item))
        self.assertFalse(store.delete_record.called)

    def test_release_store_errors(self):
        store  = Mock()
        client = make_client(store=store)
        store.get_record.return_value = None
        store.delete_record.side_effect = service_unavailable()

        lock = client.acquire_lock('customer1')
        self.assertRaises(ClientError, client.release_lock, lock)
        self.assertTrue(lock.is_released)

        lock = client.acquire_lock('customer1')
        self.assertTrue(client.release_lock(lock, best_effort=True))

    def test_release_stops_session_monitor(self):
        callback = Mock()
        lock = self.client.acquire_lock('customer1', session_monitor=(3001, callback))
        monitor = lock.session_monitor
        self.assertTrue(monitor.is_alive())

        self.assertTrue(self.client.release_lock(lock))
        monitor.join(5)
        self.assertFalse(monitor.is_alive())
        self.assertIsNone(lock.session_monitor)
        self.assertFalse(callback.called)

    def test_release_swallows_failed_monitor_join(self):
        lock = self.client.acquire_lock('customer1', session_monitor=(3001, Mock()))
        monitor = lock.session_monitor
        monitor.is_alive = Mock(return_value=True)
        monitor.join = Mock(side_effect=RuntimeError("cannot join thread"))

        self.assertTrue(self.client.release_lock(lock))
        self.assertTrue(monitor.join.called)
        Thread.join(monitor, 5)
        self.assertFalse(Thread.is_alive(monitor))


class BlockingLockStore(MemoryLockStore):
    ''' Holds the first update after `blocking` is set until the
    test lets it proceed.
    '''

    def __init__(self, **kwargs):
        super(BlockingLockStore, self).__init__(**kwargs)
        self.blocking = False
        self.entered  = Event()
        self.proceed  = Event()

    def update_record(self, *args, **kwargs):
        if self.blocking:
            self.blocking = False
            self.entered.set()
            self.proceed.wait(5)
        super(BlockingLockStore, self).update_record(*args, **kwargs)


class LostLockTest(unittest.TestCase):

    def setUp(self):
        self.client = make_client()

    def test_expired_lock_stops_session_monitor(self):
        lock = self.client.acquire_lock('customer1', session_monitor=(3001, Mock()))
        monitor = lock.session_monitor
        self.assertTrue(monitor.is_alive())

        self.client.policy.advance(20000)
        self.assertRaises(LockNotGrantedError, lock.renew)
        monitor.join(5)
        self.assertIsNone(lock.session_monitor)
        self.assertFalse(monitor.is_alive())
        self.assertNotIn(monitor, threading.enumerate())

    def test_taken_lock_stops_session_monitor(self):
        lock = self.client.acquire_lock('customer1', session_monitor=(3001, Mock()))
        monitor = lock.session_monitor
        name = lock.unique_identifier
        self.client.store.records[name] = self.client.store.records[name]._replace(version='stolen')

        self.assertRaises(LockNotGrantedError, self.client.send_heartbeat, lock)
        monitor.join(5)
        self.assertFalse(monitor.is_alive())
        self.assertNotIn(name, self.client.locks)

        self.assertTrue(self.client.shutdown())
        self.assertNotIn(monitor, threading.enumerate())


class ConcurrentHeartbeatTest(unittest.TestCase):

    def test_release_waits_for_running_heartbeat(self):
        schema  = LockSchema(partition_key='customer')
        store   = BlockingLockStore(schema=schema)
        client  = make_client(store=store, schema=schema)
        lock    = client.acquire_lock('customer1')
        version = lock.version
        worker  = HeartbeatWorker(client=client)
        renewed, released = [], []

        store.blocking = True
        heartbeat = Thread(target=lambda: renewed.append(worker.heartbeat()))
        heartbeat.start()
        self.assertTrue(store.entered.wait(5))

        release = Thread(target=lambda: released.append(client.release_lock(lock)))
        release.start()
        release.join(0.2)
        self.assertTrue(release.is_alive())
        self.assertNotIn('delete_record', [call[0] for call in store.calls])

        store.proceed.set()
        heartbeat.join(5)
        release.join(5)

        self.assertEqual([1], renewed)
        self.assertEqual([True], released)
        self.assertNotEqual(version, lock.version)
        operation, _, _, condition = store.calls[-1]
        self.assertEqual('delete_record', operation)
        self.assertEqual(Condition.version_equals(lock.version), condition)
        self.assertEqual({}, store.records)

        self.assertEqual(0, worker.heartbeat())
        self.assertRaises(LockNotGrantedError, client.send_heartbeat, lock)
        updates = [call for call in store.calls if call[0] == 'update_record']
        self.assertEqual(1, len(updates))

#---------------------------------------------------------------------------#
# main
#---------------------------------------------------------------------------#
if __name__ == "__main__":
    unittest.main()
