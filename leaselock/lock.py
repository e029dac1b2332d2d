'''
The LockRecord represents a single observation of a lock row as it
was read from the store. It is an immutable tuple so that it can be
handed around freely, new observations are made with `_replace`.

The LockItem is the handle to a lock that this client acquired. Its
version, timestamp and released flag change with every heartbeat and
release, possibly from the heartbeat worker thread, so every change
to them is made while holding the item's `guard`.
'''
import threading
from collections import namedtuple
from urllib.parse import quote

from .policy import to_millis

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

LockRecord = namedtuple('LockRecord',
    ['partition_key', 'sort_key', 'owner', 'duration', 'version',
     'is_released', 'payload', 'attributes', 'timestamp'])
LockRecord.__new__.__defaults__ = (None, None, None, None, False, None, None, None)


def get_unique_identifier(partition_key, sort_key=None):
    ''' Build the identifier used to track a lock in the registry.

    :param partition_key: The partition key of the lock
    :param sort_key: The sort key of the lock, if any
    :returns: The unique identifier of the lock
    '''
    return "%s|%s" % (quote(partition_key), quote(sort_key or ''))


class LockItem(object):
    ''' A lock currently held by a client. Apart from being
    inspected it can be renewed and released through the client
    that acquired it::

        with client.acquire_lock("reports") as lock:
            lock.renew(payload=b"halfway there")
        # upon leaving the lock will be released
    '''

    def __init__(self, **kwargs):
        ''' Initializes a new instance of the LockItem class

        :param client: The client that acquired this lock
        :param partition_key: The partition key of the lock
        :param sort_key: The sort key of the lock (default None)
        :param owner: The owner the lock was acquired for
        :param duration: The lease duration in milliseconds
        :param timestamp: The local time our lease was last confirmed
        :param version: The record version we last wrote
        :param is_released: True if the lock was released
        :param payload: The binary data stored with the lock
        :param attributes: The additional attributes stored with the lock
        :param delete_on_release: True to delete the row on release
        :param session_monitor: The session monitor watching this lock
        '''
        self.client            = kwargs.get('client')
        self.partition_key     = kwargs.get('partition_key')
        self.sort_key          = kwargs.get('sort_key', None)
        self.owner             = kwargs.get('owner')
        self.duration          = kwargs.get('duration')
        self.timestamp         = kwargs.get('timestamp')
        self.version           = kwargs.get('version')
        self.is_released       = kwargs.get('is_released', False)
        self.payload           = kwargs.get('payload', None)
        self.attributes        = kwargs.get('attributes', None) or {}
        self.delete_on_release = kwargs.get('delete_on_release', True)
        self.session_monitor   = kwargs.get('session_monitor', None)
        self.guard = threading.RLock()

    @property
    def unique_identifier(self):
        return get_unique_identifier(self.partition_key, self.sort_key)

    # ------------------------------------------------------------
    # lease methods
    # ------------------------------------------------------------

    def _elapsed(self):
        return self.client.policy.get_new_timestamp() - self.timestamp

    def is_expired(self):
        ''' Test if the lease we hold on this lock has lapsed,
        judged only by the last time it was confirmed locally.

        :returns: True if the lease has lapsed, False otherwise
        '''
        with self.guard:
            return self.is_released or self._elapsed() > self.duration

    def time_until_danger_zone(self, lead_time):
        ''' Compute how long until only `lead_time` milliseconds
        remain on our lease. This is negative once we are inside
        of that window.

        :param lead_time: The warning window in milliseconds
        :returns: The time until the window is entered in milliseconds
        '''
        with self.guard:
            return self.duration - self._elapsed() - lead_time

    def is_about_to_expire(self, lead_time):
        ''' Check if less than `lead_time` milliseconds remain on
        our lease.

        :param lead_time: The warning window in milliseconds
        :returns: True if the lease is about to run out
        '''
        return self.time_until_danger_zone(lead_time) <= 0

    # ------------------------------------------------------------
    # state updates
    # ------------------------------------------------------------

    def update_version(self, version, timestamp, duration=None):
        with self.guard:
            self.version = version
            self.timestamp = timestamp
            if duration is not None:
                self.duration = duration

    def update_timestamp(self, timestamp):
        with self.guard:
            self.timestamp = timestamp

    def mark_released(self):
        with self.guard:
            self.is_released = True

    # ------------------------------------------------------------
    # client shortcuts
    # ------------------------------------------------------------

    def renew(self, **params):
        ''' Send a heartbeat for this lock, see
        `LockClient.send_heartbeat` for the supported params.
        '''
        return self.client.send_heartbeat(self, **params)

    def ensure(self, duration):
        ''' Make sure the lock is held for at least `duration` from
        now, extending the stored lease if it would run out sooner.

        :param duration: The time the lock is needed for (ms or timedelta)
        '''
        duration = to_millis(duration)
        with self.guard:
            if self.duration - self._elapsed() >= duration:
                return self
            return self.client.send_heartbeat(self, lease_duration=duration)

    def release(self, **params):
        ''' Release this lock, see `LockClient.release_lock` for the
        supported params.

        :returns: True if the lock was released, False otherwise
        '''
        return self.client.release_lock(self, **params)

    # ------------------------------------------------------------
    # magic methods
    # ------------------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, ex_type, value, traceback):
        self.release()

    def __str__(self):
        return "LockItem(%s, owner=%s, version=%s, released=%s)" % (
            self.unique_identifier, self.owner, self.version, self.is_released)

    __repr__ = __str__
