import json
from decimal import Decimal

from boto3.dynamodb.types import Binary

from .lock import LockRecord

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class LockSchema(object):
    ''' A collection of the schema names for the underlying
    locks table. This can be overridden by simply supplying
    new names in the constructor::

        from leaselock import LockSchema

        schema = LockSchema(partition_key="resource", sort_key="shard")

    The defaults match the attribute names of the AWS DynamoDB lock
    client so that both can share a table.
    '''

    def __init__(self, **kwargs):
        ''' Initializes a new instance of the LockSchema class

        :param partition_key: The database schema name for this field
        :param sort_key: The database schema name for this field (default None)
        :param owner: The database schema name for this field
        :param duration: The database schema name for this field
        :param version: The database schema name for this field
        :param is_released: The database schema name for this field
        :param payload: The database schema name for this field
        :param table_name: The name of the database locks table
        :param read_capacity: The expected read capacity for the table
        :param write_capacity: The expected write capacity for the table
        '''
        self.partition_key  = kwargs.get('partition_key', 'key')
        self.sort_key       = kwargs.get('sort_key',      None)
        self.owner          = kwargs.get('owner',         'ownerName')
        self.duration       = kwargs.get('duration',      'leaseDuration')
        self.version        = kwargs.get('version',       'recordVersionNumber')
        self.is_released    = kwargs.get('is_released',   'isReleased')
        self.payload        = kwargs.get('payload',       'data')
        self.table_name     = kwargs.get('table_name',    'Locks')
        self.read_capacity  = kwargs.get('read_capacity',  1)
        self.write_capacity = kwargs.get('write_capacity', 1)

    @property
    def reserved(self):
        ''' The attribute names used by the lock protocol itself.
        '''
        names = [self.partition_key, self.sort_key, self.owner, self.duration,
                 self.version, self.is_released, self.payload]
        return set(name for name in names if name)

    def is_reserved(self, name):
        return name in self.reserved

    # ------------------------------------------------------------
    # schema operations
    # ------------------------------------------------------------
    # These methods convert to and from the underlying table
    # schema
    # ------------------------------------------------------------

    def to_key(self, partition_key, sort_key=None):
        ''' Build the primary key of the lock row.

        :param partition_key: The partition key of the lock
        :param sort_key: The sort key of the lock
        :returns: The key to query the table with
        '''
        if (sort_key is not None) and not self.sort_key:
            raise ValueError("a sort key was supplied but the schema has no sort key")
        if (sort_key is None) and self.sort_key:
            raise ValueError("the schema requires a value for sort key %s" % self.sort_key)

        key = { self.partition_key: partition_key }
        if self.sort_key: key[self.sort_key] = sort_key
        return key

    def to_schema(self, record):
        ''' Given a lock record, convert it to the underlying
        schema. The additional attributes are written first so
        they can never override the lock attributes.

        :param record: The record to convert
        :returns: The item to write to the table
        '''
        schema = dict(record.attributes or {})
        schema.update(self.to_key(record.partition_key, record.sort_key))
        schema[self.owner]       = record.owner
        schema[self.duration]    = record.duration
        schema[self.version]     = record.version
        schema[self.is_released] = bool(record.is_released)
        if record.payload is not None: schema[self.payload] = record.payload
        return schema

    def to_record(self, schema):
        ''' Given a table item, convert it to a lock record. Any
        attribute that is not part of the lock protocol is kept in
        the attributes of the record.

        :param schema: The item to convert
        :returns: The converted record
        '''
        schema   = dict(schema)
        duration = schema.pop(self.duration, None)
        payload  = schema.pop(self.payload, None)
        if isinstance(payload, Binary): payload = payload.value
        if isinstance(duration, (Decimal, str)): duration = int(duration)

        return LockRecord(
            partition_key = schema.pop(self.partition_key, None),
            sort_key      = schema.pop(self.sort_key, None) if self.sort_key else None,
            owner         = schema.pop(self.owner, None),
            duration      = duration,
            version       = schema.pop(self.version, None),
            is_released   = bool(schema.pop(self.is_released, False)),
            payload       = payload,
            attributes    = schema)

    def to_update(self, params, delete_payload=False):
        ''' Given a dict of updated fields, convert them to the
        attribute names to set and the attribute names to remove.

        :param params: The fields to update (version, owner, duration,
            is_released, payload, attributes)
        :param delete_payload: True to remove the stored payload
        :returns: A tuple of (fields to set, fields to remove)
        '''
        if delete_payload and (params.get('payload') is not None):
            raise ValueError("a payload cannot be supplied when deleting the payload")

        updated = dict(params.get('attributes') or {})
        if 'owner'       in params: updated[self.owner]       = params['owner']
        if 'duration'    in params: updated[self.duration]    = params['duration']
        if 'version'     in params: updated[self.version]     = params['version']
        if 'is_released' in params: updated[self.is_released] = bool(params['is_released'])
        if params.get('payload') is not None: updated[self.payload] = params['payload']
        removed = [self.payload] if delete_payload else []
        return updated, removed

    def __str__(self):
        return json.dumps(self.__dict__)

    __repr__ = __str__
