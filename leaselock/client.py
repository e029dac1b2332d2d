from botocore.exceptions import ClientError

from .errors   import ConditionFailedError, LockCurrentlyUnavailableError
from .errors   import LockNotGrantedError, LockTableDoesNotExistError
from .lock     import LockItem, LockRecord, get_unique_identifier
from .monitor  import SessionMonitor
from .policy   import LockPolicy, to_millis
from .registry import LockRegistry
from .schema   import LockSchema
from .store    import Condition, DynamoDBLockStore, is_service_unavailable
from .worker   import HeartbeatWorker

#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockClient(object):
    ''' Provides distributed locks on top of a store that supports
    conditional writes. Every write to a lock row stores a new record
    version and is only accepted if the row still has the version we
    last saw, which is what makes the locks safe between clients::

        from leaselock import LockClient

        client = LockClient()
        lock = client.acquire_lock("nightly-report", acquire_timeout=30000)
        try:
            pass # perform locked activity here
        finally:
            client.release_lock(lock)
        client.shutdown()
    '''

    def __init__(self, **kwargs):
        ''' Initialize a new instance of the LockClient class

        :param policy: The timing policy for taking and timing out locks
        :param schema: The schema of the database table to work with
        :param store: The store holding the lock rows (default DynamoDB)
        :param table: The boto3 table resource for the default store
        :param owner: The owner of the locks created by this client
        :param locks: The registry of locks held by this client
        :param worker: The underlying heartbeat worker to work with
        :param on_error: Called with (lock, error) when a heartbeat fails
        :param start_worker: True to start the heartbeat worker now (default True)
        '''
        self.policy = kwargs.get('policy', None) or LockPolicy()
        self.schema = kwargs.get('schema', None) or getattr(kwargs.get('store'), 'schema', None) or LockSchema()
        self.store  = kwargs.get('store', None) or DynamoDBLockStore(schema=self.schema, table=kwargs.get('table'))
        self.owner  = kwargs.get('owner', None) or self.policy.get_new_owner()
        self.locks  = kwargs.get('locks', None)
        if self.locks is None: self.locks = LockRegistry()
        self.worker = kwargs.get('worker', None) or HeartbeatWorker(client=self, on_error=kwargs.get('on_error'))

        if kwargs.get('start_worker', True):
            self.startup()

    # ------------------------------------------------------------
    # worker methods
    # ------------------------------------------------------------

    def startup(self):
        ''' Start the heartbeat thread and perform any lock
        initialization. This is safe to call more than once, and a
        worker stopped by `shutdown` is replaced by a new one.
        '''
        if self.worker.is_alive():
            return
        if self.worker.ident is not None:
            self.worker = HeartbeatWorker(client=self, on_error=self.worker.on_error)
        self.worker.start()

    def shutdown(self):
        ''' Stop the heartbeat thread and close all of the existing
        lock handles that we have outstanding leases to.
        '''
        self.worker.stop(timeout=self.policy.heartbeat_period / 1000.0)
        return self.release_all_locks()

    # ------------------------------------------------------------
    # table methods
    # ------------------------------------------------------------

    def lock_table_exists(self):
        ''' Check if the locks table exists and is usable.

        :returns: True if the table is usable, False otherwise
        '''
        return self.store.table_exists()

    def assert_lock_table_exists(self):
        ''' Raise if the locks table cannot be used.
        '''
        if not self.lock_table_exists():
            raise LockTableDoesNotExistError("lock table %s does not exist" % self.schema.table_name)

    def create_lock_table(self):
        ''' Create the locks table described by the schema.
        '''
        self.store.create_table()

    # ------------------------------------------------------------
    # lock validation methods
    # ------------------------------------------------------------

    def is_lock_expired(self, lock):
        ''' Given a lock, test if it is expired or not, meaning the
        lease duration has passed since its timestamp. For a record
        read from the store the timestamp is when we first saw that
        version, for a held lock it is when we last renewed it.

        :param lock: The lock to check if it is expired
        :returns: True if the lock is expired, False otherwise
        '''
        expired_timestamp = lock.timestamp + lock.duration
        return self.policy.get_new_timestamp() > expired_timestamp

    # ------------------------------------------------------------
    # locking manipulation methods
    # ------------------------------------------------------------

    def acquire_lock(self, partition_key, sort_key=None, **params):
        ''' Attempt to acquire the lock, waiting for it to be released
        or for its lease to run out if someone else holds it.

        :param partition_key: The name of the lock to acquire
        :param sort_key: The sort key of the lock (if the schema has one)
        :param payload: The binary data to store with the lock
        :param replace_data: False to keep the payload already stored (default True)
        :param additional_attributes: Extra attributes to store with the lock
        :param lease_duration: The lease to take on the lock (default the policy)
        :param refresh_period: The time to wait between reads (default the policy)
        :param acquire_timeout: The extra time to wait for the lock (default the policy)
        :param acquire_only_if_lock_already_exists: Fail if there is no lock row
        :param skip_blocking_wait: Fail at once if someone else holds the lock
        :param acquire_released_locks_consistently: Also require the version of
            a released lock to be unchanged when taking it over
        :param update_existing_record: Update a reclaimed row in place instead
            of replacing it
        :param delete_on_release: True to delete the row on release (default the policy)
        :param session_monitor: A tuple of (lead_time, callback) to be warned
            when less than lead_time remains on the lease
        :returns: The acquired lock item
        '''
        if not self.policy.is_name_valid(partition_key):
            raise ValueError("invalid lock name: %r" % (partition_key,))
        self.schema.to_key(partition_key, sort_key)

        attributes = params.get('additional_attributes') or {}
        reserved   = sorted(name for name in attributes if self.schema.is_reserved(name))
        if reserved:
            raise ValueError("additional attributes cannot be lock attributes: %s" % ', '.join(reserved))

        duration = to_millis(params.get('lease_duration', self.policy.lease_duration))
        if params.get('session_monitor'):
            lead_time, _ = params['session_monitor']
            if not (0 < to_millis(lead_time) < duration):
                raise ValueError("the session monitor lead time must be within the lease duration")

        only_existing  = params.get('acquire_only_if_lock_already_exists', False)
        no_wait        = params.get('skip_blocking_wait', False)
        consistent     = params.get('acquire_released_locks_consistently', False)
        initial_time   = self.policy.get_new_timestamp()                                     # the time we started trying to acquire
        lock_timeout   = to_millis(params.get('acquire_timeout', self.policy.acquire_timeout)) # how long to wait until we fail
        refresh_time   = to_millis(params.get('refresh_period', self.policy.refresh_period))   # how long to wait between database reads
        watching_lock  = None                                                                # the lock we are waiting on to expire
        name           = get_unique_identifier(partition_key, sort_key)

        while True:
            current_lock = self._retrieve_entry(partition_key, sort_key)

            if (current_lock is None) and only_existing:
                raise LockNotGrantedError("lock %s does not exist" % name)
            if no_wait and current_lock and not current_lock.is_released:
                raise LockCurrentlyUnavailableError("lock %s is held by %s" % (name, current_lock.owner))

            try:
                # ------------------------------------------------------------
                # Case 1:
                # ------------------------------------------------------------
                # There is no existing lock in the database, so we can simply
                # grab the lock if no one beats us to creating it.
                # ------------------------------------------------------------
                if current_lock is None:
                    return self._create_entry(partition_key, sort_key, duration, params)

                # ------------------------------------------------------------
                # Case 2:
                # ------------------------------------------------------------
                # There is an existing lock in the database, however, it has
                # already been released and exists because a previous owner
                # chose not to delete it. We can take it over as long as it
                # is still released (and unchanged if asked to be consistent).
                # ------------------------------------------------------------
                elif current_lock.is_released:
                    if consistent:
                        condition = Condition.version_and_released(current_lock.version, True)
                    else: condition = Condition.released(True)
                    return self._overwrite_entry(partition_key, sort_key, current_lock, condition, duration, params)

                # ------------------------------------------------------------
                # Case 3:
                # ------------------------------------------------------------
                # If we are currently watching a lock and it has locally
                # become expired (we have waited the specified lease of the
                # lock) and the version has not changed in the interim, the
                # owner stopped sending heartbeats and we may take it over.
                # ------------------------------------------------------------
                elif (watching_lock
                 and (watching_lock.version == current_lock.version)
                 and (self.is_lock_expired(watching_lock))):
                    _logger.info("lease on lock %s held by %s has expired", name, current_lock.owner)
                    condition = Condition.version_equals(current_lock.version)
                    return self._overwrite_entry(partition_key, sort_key, current_lock, condition, duration, params)

                # ------------------------------------------------------------
                # Case 4:
                # ------------------------------------------------------------
                # If we are currently not watching a lock, but someone has
                # the lock that we want, we start watching it and update our
                # timeout to match the lease of the lock.
                # ------------------------------------------------------------
                elif not watching_lock:
                    lock_timeout += current_lock.duration
                    watching_lock = current_lock

                # ------------------------------------------------------------
                # Case 5:
                # ------------------------------------------------------------
                # If someone has gotten a new lease on the lock in between our
                # reads, we are forced to watch the new version. However, we do
                # not update our timeout as we might otherwise wait forever.
                # ------------------------------------------------------------
                elif watching_lock.version != current_lock.version:
                    watching_lock = current_lock

            except ConditionFailedError as ex:
                _logger.debug("someone else acquired lock %s before us", name)
                if no_wait:
                    raise LockNotGrantedError("lock %s was acquired by someone else" % name) from ex

            # ------------------------------------------------------------
            # Retry:
            # ------------------------------------------------------------
            # If after waiting the supplied timeout plus the lease of the
            # lock we were watching we still were not able to get the lock,
            # we simply fail and let the user know. Otherwise we sleep
            # until the next read.
            # ------------------------------------------------------------
            waited_time = self.policy.get_new_timestamp() - initial_time
            if waited_time > lock_timeout:
                raise LockNotGrantedError("failed to acquire lock %s after %d ms" % (name, waited_time))
            _logger.debug("waiting %d ms to acquire lock %s, total wait %d ms", refresh_time, name, waited_time)
            self.policy.wait(refresh_time)

    def try_acquire_lock(self, partition_key, sort_key=None, **params):
        ''' Attempt to acquire the lock without waiting, instead
        simply fail fast.

        All the supplied params that are applicable are passed on
        to the underlying operation.

        :param partition_key: The name of the lock to acquire
        :param sort_key: The sort key of the lock (if the schema has one)
        :returns: The lock on success, None on failure
        '''
        params['skip_blocking_wait'] = True
        try:
            return self.acquire_lock(partition_key, sort_key, **params)
        except (LockNotGrantedError, LockCurrentlyUnavailableError) as ex:
            _logger.debug("failed to acquire lock %s: %s", partition_key, ex)
        return None

    def send_heartbeat(self, lock, payload=None, delete_payload=False, lease_duration=None, metrics_sink=None):
        ''' Renew the lease we hold on the lock by writing a new record
        version, optionally changing the payload or the lease duration.

        The checks against the lock are made on our cached copy, we
        never assume we still hold a lock whose lease has lapsed.

        :param lock: The lock to send a heartbeat for
        :param payload: The new binary data to store with the lock
        :param delete_payload: True to remove the stored data
        :param lease_duration: A new lease duration for the lock
        :param metrics_sink: Called with (operation, lock, elapsed ms) on success
        :returns: The renewed lock
        '''
        update = { 'payload': payload }
        if lease_duration is not None: update['duration'] = to_millis(lease_duration)
        updated, removed = self.schema.to_update(update, delete_payload)
        name = lock.unique_identifier

        # ------------------------------------------------------------
        # Lost:
        # ------------------------------------------------------------
        # A lock we no longer hold is dropped along with its session
        # monitor. The monitor is stopped outside of the item guard as
        # it needs the guard to finish its current check.
        # ------------------------------------------------------------
        try:
            with lock.guard:
                if (lock.owner != self.owner) and not self.is_lock_expired(lock):
                    raise LockNotGrantedError("lock %s is owned by %s" % (name, lock.owner))
                if self.is_lock_expired(lock):
                    raise LockNotGrantedError("lease on lock %s has expired" % name)
                if lock.is_released:
                    raise LockNotGrantedError("lock %s has been released" % name)

                version = self.policy.get_new_version()
                updated[self.schema.version] = version
                start = self.policy.get_new_timestamp()

                try:
                    self.store.update_record(lock.partition_key, lock.sort_key, updated,
                        Condition.version_equals(lock.version), removed)
                except ConditionFailedError as ex:
                    raise LockNotGrantedError("lock %s was acquired by someone else" % name) from ex
                except ClientError as ex:
                    if self.policy.hold_lock_on_service_unavailable and is_service_unavailable(ex):
                        _logger.info("store is unavailable, holding lock %s", name)
                        lock.update_timestamp(self.policy.get_new_timestamp())
                    raise

                lock.update_version(version, start, update.get('duration'))
                if delete_payload: lock.payload = None
                elif payload is not None: lock.payload = payload
        except LockNotGrantedError:
            self._drop_entry(lock)
            raise

        _logger.debug("success touching lock: %s", lock)
        if metrics_sink:
            metrics_sink('heartbeat', lock, self.policy.get_new_timestamp() - start)
        return lock

    def release_lock(self, lock, delete=None, payload=None, best_effort=False):
        ''' Release the supplied lock and apply any supplied payload
        to the underlying row.

        If the delete flag is not set, it will default to what was
        asked for when the lock was acquired.

        :param lock: The lock to attempt to release
        :param delete: True to also delete locks, False to mark them released
        :param payload: The binary data to leave on a released lock
        :param best_effort: True to ignore store errors while releasing
        :returns: True if the lock was released, False otherwise
        '''
        name = lock.unique_identifier
        if lock.owner != self.owner:
            _logger.debug("cannot release lock %s owned by %s", name, lock.owner)
            return False

        delete = delete if (delete is not None) else lock.delete_on_release

        # ------------------------------------------------------------
        # Cleanup:
        # ------------------------------------------------------------
        # We first stop watching the lock and sending heartbeats for
        # it so that nothing races with the release below. Even if the
        # release fails the lease will then run out on its own.
        # ------------------------------------------------------------
        self._drop_entry(lock)

        with lock.guard:
            if lock.is_released:
                _logger.debug("lock %s was already released", name)
                return False

            condition = Condition.version_equals(lock.version)
            try:
                if delete:
                    self.store.delete_record(lock.partition_key, lock.sort_key, condition)
                else:
                    updated, _ = self.schema.to_update({ 'is_released': True, 'payload': payload })
                    self.store.update_record(lock.partition_key, lock.sort_key, updated, condition)
            except ConditionFailedError:
                _logger.warning("lock %s was acquired by someone else before it was released", name)
                return False
            except ClientError:
                if not best_effort: raise
                _logger.warning("ignoring store error while releasing lock %s", name, exc_info=True)
            finally:
                lock.mark_released()

        _logger.debug("success releasing lock: %s", name)
        return True

    def release_all_locks(self, **params):
        ''' Release all the currently held locks by this instance of
        the lock client (cached).

        All the supplied params that are applicable are passed on to the
        underlying operation.

        :returns: True if all locks were released, False otherwise
        '''
        locks    = self.locks.values()
        released = [self.release_lock(lock, **params) for lock in locks]
        return all(released) # so we don't short circuit any evaluation

    def does_lock_exist(self, partition_key, sort_key=None):
        ''' Check if a lock with the given name exists on the
        backend database and is active.

        :param partition_key: The name of the lock to check for existance
        :param sort_key: The sort key of the lock
        :returns: True if the lock exists, False otherwise
        '''
        return bool(self.retrieve_lock(partition_key, sort_key))

    def retrieve_lock(self, partition_key, sort_key=None):
        ''' Retrieve the lock by the supplied name strictly
        to view its data, but not to perform any updates.

        :param partition_key: The lock name to retrieve
        :param sort_key: The sort key of the lock
        :returns: The lock record at the supplied name or None
        '''
        # ------------------------------------------------------------
        # Case 1:
        # ------------------------------------------------------------
        # We try the cache first to see if we are already holding
        # that lock and already have a timestamp running.
        # ------------------------------------------------------------
        held_lock = self.locks.get(get_unique_identifier(partition_key, sort_key))
        if held_lock:
            current_lock = self._to_record(held_lock)

        # ------------------------------------------------------------
        # Case 2:
        # ------------------------------------------------------------
        # We are not holding that lock, so we pull down a fresh copy
        # and return it to the user.
        # ------------------------------------------------------------
        else: current_lock = self._retrieve_entry(partition_key, sort_key)

        # ------------------------------------------------------------
        # Cleanup:
        # ------------------------------------------------------------
        # We clear the version so the record cannot be used to take
        # the lock over. Also, if the lock is released we treat that
        # lock as not existing.
        # ------------------------------------------------------------
        if current_lock:
            current_lock = current_lock._replace(version=None)
            if current_lock.is_released: current_lock = None
        return current_lock

    def get_all_locks(self):
        ''' Retrieve every lock row currently stored in the table,
        released ones included.

        :returns: A generator of lock records
        '''
        for record in self.store.scan_records():
            yield record._replace(timestamp=self.policy.get_new_timestamp())

    # ------------------------------------------------------------
    # raw store methods
    # ------------------------------------------------------------

    def _retrieve_entry(self, partition_key, sort_key=None):
        ''' Given the name of a lock, attempt to retrieve the lock
        and stamp it with the time we saw it.

        :param partition_key: The name of the lock to retrieve
        :param sort_key: The sort key of the lock
        :returns: The lock record if it exists, None otherwise
        '''
        record = self.store.get_record(partition_key, sort_key)
        if record is None:
            _logger.debug("no lock stored for %s", get_unique_identifier(partition_key, sort_key))
            return None
        return record._replace(timestamp=self.policy.get_new_timestamp())

    def _create_entry(self, partition_key, sort_key, duration, params):
        ''' Write a brand new lock row, failing if someone else has
        created one in the meantime.

        :returns: The acquired lock item
        '''
        record = self._to_record(None,
            partition_key = partition_key,
            sort_key      = sort_key,
            duration      = duration,
            payload       = params.get('payload'),
            attributes    = params.get('additional_attributes'))
        self.store.put_record(record, Condition.absent())
        return self._track_entry(record, params)

    def _overwrite_entry(self, partition_key, sort_key, current_lock, condition, duration, params):
        ''' Take over an existing lock row, as long as the supplied
        condition on it still holds.

        :param current_lock: The record we observed
        :param condition: The condition the row must still meet
        :returns: The acquired lock item
        '''
        payload = params.get('payload')
        if (not params.get('replace_data', True)) and (current_lock.payload is not None):
            payload = current_lock.payload

        record = self._to_record(None,
            partition_key = partition_key,
            sort_key      = sort_key,
            duration      = duration,
            payload       = payload,
            attributes    = params.get('additional_attributes'))

        if params.get('update_existing_record', False):
            updated, removed = self.schema.to_update({
                'owner':       record.owner,
                'duration':    record.duration,
                'version':     record.version,
                'is_released': False,
                'payload':     record.payload,
                'attributes':  record.attributes,
            }, delete_payload=(record.payload is None))
            self.store.update_record(record.partition_key, record.sort_key, updated, condition, removed)
        else: self.store.put_record(record, condition)
        return self._track_entry(record, params)

    def _track_entry(self, record, params):
        ''' Create the lock item for a record we just wrote, start
        sending heartbeats for it and watching it if asked to.

        :param record: The record that was written
        :returns: The acquired lock item
        '''
        lock = LockItem(
            client            = self,
            partition_key     = record.partition_key,
            sort_key          = record.sort_key,
            owner             = record.owner,
            duration          = record.duration,
            timestamp         = record.timestamp,
            version           = record.version,
            payload           = record.payload,
            attributes        = record.attributes,
            delete_on_release = params.get('delete_on_release', self.policy.delete_lock))
        self.locks.add(lock)

        lead_time, callback = params.get('session_monitor') or (None, None)
        if callback:
            lock.session_monitor = SessionMonitor(lock=lock, lead_time=to_millis(lead_time), callback=callback)
            lock.session_monitor.start()

        _logger.info("acquired lock %s", lock)
        return lock

    def _to_record(self, lock, **params):
        ''' Build a record either from a held lock or from a new
        version of a lock owned by this client. The timestamp of a new
        version is taken before it is written so our lease never
        appears longer than the one in the store.
        '''
        if lock is not None:
            return LockRecord(
                partition_key = lock.partition_key,
                sort_key      = lock.sort_key,
                owner         = lock.owner,
                duration      = lock.duration,
                version       = lock.version,
                is_released   = lock.is_released,
                payload       = lock.payload,
                attributes    = dict(lock.attributes),
                timestamp     = lock.timestamp)

        return LockRecord(
            owner       = self.owner,
            version     = self.policy.get_new_version(),
            is_released = False,
            timestamp   = self.policy.get_new_timestamp(),
            attributes  = dict(params.pop('attributes', None) or {}),
            **params)

    def _drop_entry(self, lock):
        ''' Stop watching the lock and sending heartbeats for it.
        '''
        self._remove_session_monitor(lock)
        self.locks.remove(lock)

    def _remove_session_monitor(self, lock):
        monitor = lock.session_monitor
        if monitor is None:
            return
        lock.session_monitor = None
        monitor.stop(timeout=self.policy.refresh_period / 1000.0)
