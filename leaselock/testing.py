'''
Doubles used to exercise the lock client without a DynamoDB table
or a real clock::

    from leaselock import LockClient
    from leaselock.testing import MemoryLockStore, ManualClockPolicy

    policy = ManualClockPolicy(lease_duration=10000)
    client = LockClient(store=MemoryLockStore(), policy=policy, start_worker=False)
'''
import threading

from .errors import ConditionFailedError
from .lock   import get_unique_identifier
from .policy import LockPolicy
from .schema import LockSchema

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class ManualClockPolicy(LockPolicy):
    ''' A policy whose clock only moves when told to. Waiting
    between acquire attempts advances the clock instead of blocking.
    '''

    def __init__(self, **kwargs):
        super(ManualClockPolicy, self).__init__(**kwargs)
        self.now = kwargs.get('now', 1000)
        self.waits = []

    def get_new_timestamp(self):
        return self.now

    def advance(self, milliseconds):
        self.now += milliseconds

    def wait(self, milliseconds):
        self.waits.append(milliseconds)
        self.advance(milliseconds)


class MemoryLockStore(object):
    ''' A store keeping the lock rows in a dict. The conditions are
    checked under a single mutex so they are as atomic as they are
    in DynamoDB. Every call is recorded in `calls`.
    '''

    def __init__(self, **kwargs):
        self.schema  = kwargs.get('schema', None) or LockSchema()
        self.records = {}
        self.calls   = []
        self._mutex  = threading.Lock()

    def _check(self, name, condition):
        if not condition.matches(self.records.get(name)):
            raise ConditionFailedError(str(condition))

    def table_exists(self):
        return True

    def create_table(self):
        self.calls.append(('create_table',))

    def get_record(self, partition_key, sort_key=None):
        self.calls.append(('get_record', partition_key, sort_key))
        with self._mutex:
            return self.records.get(get_unique_identifier(partition_key, sort_key))

    def scan_records(self):
        with self._mutex:
            return iter(list(self.records.values()))

    def put_record(self, record, condition):
        self.calls.append(('put_record', record, condition))
        name = get_unique_identifier(record.partition_key, record.sort_key)
        with self._mutex:
            self._check(name, condition)
            self.records[name] = record._replace(timestamp=None)

    def update_record(self, partition_key, sort_key, fields, condition, remove=()):
        self.calls.append(('update_record', partition_key, sort_key, fields, condition, remove))
        name = get_unique_identifier(partition_key, sort_key)
        with self._mutex:
            self._check(name, condition)
            item = self.schema.to_schema(self.records[name])
            item.update(fields)
            for field in remove:
                item.pop(field, None)
            self.records[name] = self.schema.to_record(item)

    def delete_record(self, partition_key, sort_key, condition):
        self.calls.append(('delete_record', partition_key, sort_key, condition))
        name = get_unique_identifier(partition_key, sort_key)
        with self._mutex:
            self._check(name, condition)
            del self.records[name]
