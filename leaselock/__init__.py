from .errors   import LockError, LockNotGrantedError, LockCurrentlyUnavailableError
from .errors   import LockTableDoesNotExistError, ConditionFailedError
from .lock     import LockItem, LockRecord
from .policy   import LockPolicy
from .schema   import LockSchema
from .store    import Condition, DynamoDBLockStore
from .registry import LockRegistry
from .worker   import HeartbeatWorker
from .monitor  import SessionMonitor
from .client   import LockClient
from .context  import LockContext as locker
