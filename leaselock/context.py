#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockContext(object):
    ''' A context manager to help using locks in a `with` statement.

    .. code-block:: python

        from leaselock import locker

        with locker(client=client, name="lock-to-get") as handle:
            pass # perform locked activity here
        # upon leaving the lock will be removed
    '''

    def __init__(self, **kwargs):
        ''' Initialize a new instance of the LockContext

        All other supplied params are passed on to `acquire_lock`.

        :param client: The client to acquire the lock with
        :param name: The name of the lock to acquire
        :param sort_key: The sort key of the lock to acquire (default None)
        '''
        self.client   = kwargs.pop('client')
        self.name     = kwargs.pop('name')
        self.sort_key = kwargs.pop('sort_key', None)
        self.params   = kwargs
        self.lock     = None

    def __enter__(self):
        ''' On enter of the context manager, this will acquire
        the specified lock.  When the lock has been acquired,
        this will return.
        '''
        self.lock = self.client.acquire_lock(self.name, self.sort_key, **self.params)
        return self

    def __exit__(self, ex_type, value, traceback):
        ''' On exit of the contet manager, this will release
        the currently being held lock. When this operation is
        finished, this will return.
        '''
        if not self.client.release_lock(self.lock):
            _logger.warning("lock %s was lost before leaving the context", self.lock.unique_identifier)
