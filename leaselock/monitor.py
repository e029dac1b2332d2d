from threading import Thread, Event, current_thread

#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class SessionMonitor(Thread):
    ''' Watches a single held lock and warns the application once the
    time left on its lease drops below `lead_time`. The monitor never
    renews the lock itself, it only runs the callback so that the
    application can stop working under a lock it is about to lose.

    The callback runs once each time the lock enters the danger zone;
    after a heartbeat pushes the lease back out the monitor is armed
    again.
    '''

    def __init__(self, **kwargs):
        ''' Initializes a new instance of the SessionMonitor class

        :param lock: The lock item to watch
        :param lead_time: The warning window in milliseconds
        :param callback: The callable to run, it receives the lock item
        :param period: The longest time between two checks in milliseconds
        :param daemon: True to daemonize the thread, False otherwise (default True)
        '''
        self.lock      = kwargs.get('lock')
        super(SessionMonitor, self).__init__(name='leaselock-monitor-%s' % self.lock.unique_identifier)

        self.daemon    = kwargs.get('daemon', True)
        self.lead_time = kwargs.get('lead_time')
        self.callback  = kwargs.get('callback')
        self.period    = kwargs.get('period', 1000)
        self.is_armed  = True
        self._stop_event = Event()

    def check(self):
        ''' Evaluate the lock once, running the callback if it just
        entered the danger zone.

        :returns: The time to wait until the next check in milliseconds
        '''
        remaining = self.lock.time_until_danger_zone(self.lead_time)
        if remaining > 0:
            if not self.is_armed:
                _logger.debug("lock %s was renewed, monitor armed", self.lock.unique_identifier)
            self.is_armed = True
            return min(remaining, self.period)

        if self.is_armed:
            self.is_armed = False
            _logger.info("lock %s is about to expire, running session callback", self.lock.unique_identifier)
            try:
                self.callback(self.lock)
            except Exception:
                _logger.exception("session callback for %s failed", self.lock.unique_identifier)
        return self.period

    def run(self):
        while not self._stop_event.is_set():
            if self.lock.is_released:
                break
            delay = self.check()
            self._stop_event.wait(delay / 1000.0)

    def stop(self, timeout=None):
        ''' Stop the monitor and wait up to `timeout` seconds for the
        thread to finish. This never raises, a monitor that does not
        stop in time is left to exit on its own.

        :param timeout: The amount of time to wait for the shutdown
        '''
        self._stop_event.set()
        if (not self.is_alive()) or (current_thread() is self):
            return
        try:
            self.join(timeout)
        except RuntimeError:
            _logger.warning("failed to join session monitor for %s", self.lock.unique_identifier, exc_info=True)
        if self.is_alive():
            _logger.debug("session monitor for %s did not stop in time", self.lock.unique_identifier)
