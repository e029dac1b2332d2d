from threading import Thread, Event

from .errors import LockNotGrantedError

#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class HeartbeatWorker(Thread):
    ''' The worker that runs to periodically update lock leases as long
    as the system is alive. This prevents long running processes from
    losing their locks to other clients.

    .. code-block:: python

        from leaselock import HeartbeatWorker
        from leaselock import LockClient

        # Note, this is actually all internal to the client,
        # do not do this.
        client = LockClient(start_worker=False)
        worker = HeartbeatWorker(client=client)
        worker.start()
        worker.stop(timeout=10) # seconds
    '''

    def __init__(self, **kwargs):
        ''' Initializes a new instance of the HeartbeatWorker class

        :param daemon: True to daemonize the thread, False otherwise (default True)
        :param client: The client to perform management with
        :param locks: The registry of locks to manage (default the client locks)
        :param period: The length of each cycle in milliseconds (default the policy)
        :param on_error: Called with (lock, error) when a heartbeat fails
        '''
        super(HeartbeatWorker, self).__init__(name='leaselock-heartbeat')

        self.daemon   = kwargs.get('daemon', True)
        self.client   = kwargs.get('client')
        self.locks    = kwargs.get('locks', None)
        if self.locks is None: self.locks = self.client.locks
        self.period   = kwargs.get('period', None) or self.client.policy.heartbeat_period
        self.on_error = kwargs.get('on_error', None) or self._log_error
        self._stop_event = Event()

    def stop(self, timeout=None):
        ''' Stop the underlying worker thread and join on its
        completion for the specified timeout.

        :param timeout: The amount of time to wait for the shutdown in seconds
        '''
        self._stop_event.set()
        if self.is_alive(): self.join(timeout)

    def heartbeat(self):
        ''' Renew the lease of every lock currently in the registry.
        A failure to renew one lock is reported and does not stop
        the others from being renewed.

        :returns: The number of locks that were renewed
        '''
        renewed = 0
        for lock in self.locks.values():
            try:
                self.client.send_heartbeat(lock)
                renewed += 1
            except LockNotGrantedError as ex:
                _logger.debug("heartbeat not granted for %s: %s", lock.unique_identifier, ex)
            except Exception as ex:
                self.on_error(lock, ex)
        return renewed

    def run(self):
        ''' The worker thread used to update the lock leases
        for the currently handled locks.
        '''
        policy = self.client.policy
        while not self._stop_event.is_set():
            _logger.debug("starting next round of worker: %d locks", len(self.locks))
            start = policy.get_new_timestamp()
            self.heartbeat()
            elapsed = policy.get_new_timestamp() - start
            if elapsed > self.period:
                _logger.warning("heartbeat round took %d ms, longer than the period of %d ms", elapsed, self.period)
            self._stop_event.wait(max(self.period - elapsed, 0) / 1000.0)

    @staticmethod
    def _log_error(lock, error):
        _logger.warning("failed sending heartbeat for %s", lock.unique_identifier, exc_info=error)
