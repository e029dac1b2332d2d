import time
import uuid
import socket
import json
from datetime import timedelta

#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# helpers
#--------------------------------------------------------------------------------

def to_millis(value):
    ''' Convert a duration to an integer number of milliseconds.

    :param value: A timedelta or a number of milliseconds
    :returns: The duration in milliseconds
    '''
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    return int(value)

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockPolicy(object):
    '''
    Along with the timing policy, this class also includes the policy
    for getting a new version, new timestamp, new owner identifer,
    and checking if a lock name is valid. All of these can be
    overridden to customize the use case for the system::

        import os
        from leaselock import LockPolicy

        class MyPolicy(LockPolicy):

            def is_name_valid(self, name):
                return name.startswith("application.")

            def get_new_owner(self):
                return "%s:%d" % (os.getenv('HOST'), os.getpid())
    '''

    def __init__(self, **kwargs):
        ''' Initailize a new instance of the LockPolicy class

        All durations may be supplied as a timedelta or as a number
        of milliseconds, they are stored in milliseconds.

        :param lease_duration: How long a lock is held without a heartbeat
        :param heartbeat_period: The time between two heartbeat rounds
        :param refresh_period: The time to wait between reads while acquiring
        :param acquire_timeout: The extra time to wait trying to get a lock
        :param delete_lock: True to delete locks on release, false otherwise
        :param hold_lock_on_service_unavailable: True to keep our lease alive
            locally while the store reports it is unavailable
        '''
        self.lease_duration   = to_millis(kwargs.get('lease_duration', timedelta(seconds=20)))
        self.heartbeat_period = to_millis(kwargs.get('heartbeat_period', timedelta(seconds=5)))
        self.refresh_period   = to_millis(kwargs.get('refresh_period', timedelta(seconds=1)))
        self.acquire_timeout  = to_millis(kwargs.get('acquire_timeout', timedelta(seconds=0)))
        self.delete_lock      = kwargs.get('delete_lock', True)
        self.hold_lock_on_service_unavailable = kwargs.get('hold_lock_on_service_unavailable', False)

        if self.heartbeat_period >= self.lease_duration:
            _logger.warning("heartbeat period %d ms is not shorter than the lease duration %d ms",
                self.heartbeat_period, self.lease_duration)

    def is_name_valid(self, name):
        ''' Helper method to check if the supplied name is valid
        to use as a key or not.

        :param name: The name to check for validity
        :returns: True if a valid name, False otherwise
        '''
        return bool(name)

    def get_new_owner(self):
        ''' Helper method to retrieve a new owner name that is
        not only unique to the server, but unique to the application
        on this server.

        :returns: A new owner name to operate with
        '''
        return "%s.%s" % (socket.gethostname(), uuid.uuid4())

    def get_new_version(self):
        ''' Helper method to retrieve a new record version for
        a lock. Every successful write to a lock stores a new
        one, so it must never repeat.

        :returns: A new record version
        '''
        return str(uuid.uuid4())

    def get_new_timestamp(self):
        ''' Helper method to retrieve the current local time in
        milliseconds. It is only compared against other local
        timestamps so it is taken from the monotonic clock.

        :returns: The current time in milliseconds
        '''
        return int(time.monotonic() * 1000)

    def wait(self, milliseconds):
        ''' Block the calling thread between two attempts at
        acquiring a lock.

        :param milliseconds: The amount of time to wait
        '''
        time.sleep(milliseconds / 1000.0)

    # ------------------------------------------------------------
    # magic methods
    # ------------------------------------------------------------

    def __str__(self):
        return json.dumps(self.__dict__)

    __repr__ = __str__
