import threading

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockRegistry(object):
    ''' The locks currently held by a client, keyed by their unique
    identifier. It is shared between the callers of the client and
    the heartbeat worker, so every operation takes the registry lock
    and iteration happens over a snapshot.
    '''

    def __init__(self):
        self._locks = {}
        self._mutex = threading.Lock()

    def add(self, lock):
        with self._mutex:
            self._locks[lock.unique_identifier] = lock

    def remove(self, lock):
        ''' Stop tracking the supplied lock.

        :param lock: The lock to remove
        :returns: True if the lock was being tracked, False otherwise
        '''
        with self._mutex:
            return self._locks.pop(lock.unique_identifier, None) is not None

    def get(self, unique_identifier):
        with self._mutex:
            return self._locks.get(unique_identifier)

    def values(self):
        with self._mutex:
            return list(self._locks.values())

    def clear(self):
        with self._mutex:
            self._locks.clear()

    def __contains__(self, unique_identifier):
        with self._mutex:
            return unique_identifier in self._locks

    def __len__(self):
        with self._mutex:
            return len(self._locks)
