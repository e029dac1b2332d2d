'''
The exceptions raised by the lock client. Invalid combinations of
arguments raise the builtin `ValueError` and errors coming from the
backing store (throttling, network, service errors) are propagated
as they were raised by botocore.
'''

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockError(Exception):
    ''' The base class for all the errors raised by the lock client.
    '''
    pass


class LockNotGrantedError(LockError):
    ''' Raised when the lock could not be acquired or renewed, either
    because someone else holds it or because our lease on it lapsed.
    '''
    pass


class LockCurrentlyUnavailableError(LockError):
    ''' Raised when a lock is held by another client and the caller
    asked not to wait for it to become free.
    '''
    pass


class LockTableDoesNotExistError(LockError):
    ''' Raised when the locks table is missing or not yet usable.
    '''
    pass


class ConditionFailedError(LockError):
    ''' Raised by a store when the condition attached to a write no
    longer holds. The client never lets this escape to its callers.
    '''
    pass
