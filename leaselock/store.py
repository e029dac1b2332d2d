from collections import namedtuple

import boto3
from botocore.exceptions import ClientError

from .errors import ConditionFailedError
from .schema import LockSchema

#--------------------------------------------------------------------------------
# logging
#--------------------------------------------------------------------------------

import logging
_logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------
# constants
#--------------------------------------------------------------------------------

PK_NOT_EXISTS_CONDITION = "attribute_not_exists(#pk)"
PK_EXISTS_AND_RVN_IS_THE_SAME_CONDITION = "attribute_exists(#pk) AND #rvn = :rvn"
PK_EXISTS_AND_IS_RELEASED_CONDITION = "attribute_exists(#pk) AND #ir = :ir"
PK_EXISTS_AND_RVN_IS_THE_SAME_AND_IS_RELEASED_CONDITION = "attribute_exists(#pk) AND #rvn = :rvn AND #ir = :ir"

SERVICE_UNAVAILABLE_CODES = ('ServiceUnavailable', 'ServiceUnavailableException')

#--------------------------------------------------------------------------------
# helpers
#--------------------------------------------------------------------------------

def is_service_unavailable(error):
    ''' Check if the supplied store error means that the service
    is currently unavailable (HTTP 503).

    :param error: The error raised by the store
    :returns: True if the service was unavailable, False otherwise
    '''
    if not isinstance(error, ClientError):
        return False
    response = error.response or {}
    status   = response.get('ResponseMetadata', {}).get('HTTPStatusCode')
    code     = response.get('Error', {}).get('Code')
    return status == 503 or code in SERVICE_UNAVAILABLE_CODES


def is_condition_failure(error):
    code = (error.response or {}).get('Error', {}).get('Code')
    return code == 'ConditionalCheckFailedException'

#--------------------------------------------------------------------------------
# classes
#--------------------------------------------------------------------------------

class Condition(namedtuple('Condition', ['exists', 'version', 'is_released'])):
    ''' The precondition attached to a write of a lock row. A
    condition either requires the row to be absent, or requires it
    to exist with the supplied version and/or released flag (a None
    field is not checked).
    '''

    @classmethod
    def absent(cls):
        return cls(False, None, None)

    @classmethod
    def version_equals(cls, version):
        return cls(True, version, None)

    @classmethod
    def released(cls, is_released=True):
        return cls(True, None, is_released)

    @classmethod
    def version_and_released(cls, version, is_released=True):
        return cls(True, version, is_released)

    def matches(self, record):
        ''' Evaluate this condition against a record.

        :param record: The current record or None if absent
        :returns: True if a write guarded by this condition may proceed
        '''
        if not self.exists:
            return record is None
        if record is None:
            return False
        if (self.version is not None) and (record.version != self.version):
            return False
        if (self.is_released is not None) and (bool(record.is_released) != self.is_released):
            return False
        return True


class DynamoDBLockStore(object):
    ''' The lock rows as stored in a DynamoDB table. Every write
    takes a `Condition` that DynamoDB checks atomically; when it does
    not hold a `ConditionFailedError` is raised, every other error is
    raised as is::

        import boto3
        from leaselock import DynamoDBLockStore, LockSchema

        schema = LockSchema(table_name="Locks")
        store  = DynamoDBLockStore(schema=schema,
            resource=boto3.resource("dynamodb", region_name="eu-west-1"))
    '''

    def __init__(self, **kwargs):
        ''' Initialize a new instance of the DynamoDBLockStore class

        :param schema: The schema of the database table to work with
        :param table: The boto3 Table resource to work with
        :param resource: The boto3 dynamodb resource to get the table from
        '''
        self.schema = kwargs.get('schema', None) or LockSchema()
        self.table  = kwargs.get('table', None) or self._get_table(kwargs.get('resource', None))

    def _get_table(self, resource):
        resource = resource or boto3.resource('dynamodb')
        return resource.Table(self.schema.table_name)

    # ------------------------------------------------------------
    # table methods
    # ------------------------------------------------------------

    def table_exists(self):
        ''' Check if the locks table exists and can be written to.
        A table that is being created or deleted is not usable.

        :returns: True if the table is usable, False otherwise
        '''
        try:
            table = self.table.meta.client.describe_table(TableName=self.schema.table_name)
        except ClientError as ex:
            if ex.response.get('Error', {}).get('Code') == 'ResourceNotFoundException':
                _logger.debug("table %s does not exist", self.schema.table_name)
                return False
            raise
        status = table.get('Table', {}).get('TableStatus')
        _logger.debug("table %s has status %s", self.schema.table_name, status)
        return status in ('ACTIVE', 'UPDATING')

    def create_table(self):
        ''' Create the underlying dynamodb table for writing locks
        to and wait for it to become active.
        '''
        client = self.table.meta.client
        keys   = [ (self.schema.partition_key, 'HASH') ]
        if self.schema.sort_key: keys.append((self.schema.sort_key, 'RANGE'))

        _logger.info("creating the lock table %s", self.schema.table_name)
        client.create_table(
            TableName = self.schema.table_name,
            KeySchema = [
                { 'AttributeName': name, 'KeyType': kind } for name, kind in keys ],
            AttributeDefinitions = [
                { 'AttributeName': name, 'AttributeType': 'S' } for name, _ in keys ],
            ProvisionedThroughput = {
                'ReadCapacityUnits':  self.schema.read_capacity,
                'WriteCapacityUnits': self.schema.write_capacity,
            })
        client.get_waiter('table_exists').wait(TableName=self.schema.table_name)
        _logger.debug("lock table %s is active", self.schema.table_name)

    # ------------------------------------------------------------
    # record methods
    # ------------------------------------------------------------

    def get_record(self, partition_key, sort_key=None):
        ''' Retrieve the current lock row with a consistent read.

        :param partition_key: The partition key of the lock
        :param sort_key: The sort key of the lock
        :returns: The lock record if it exists, None otherwise
        '''
        response = self.table.get_item(
            Key=self.schema.to_key(partition_key, sort_key), ConsistentRead=True)
        if 'Item' not in response:
            return None
        return self.schema.to_record(response['Item'])

    def scan_records(self):
        ''' Iterate over every lock row in the table.

        :returns: A generator of lock records
        '''
        params = { 'ConsistentRead': True }
        while True:
            response = self.table.scan(**params)
            for item in response.get('Items', []):
                yield self.schema.to_record(item)
            if 'LastEvaluatedKey' not in response:
                break
            params['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def put_record(self, record, condition):
        ''' Write the whole lock row if the condition holds.

        :param record: The lock record to write
        :param condition: The condition the current row must meet
        '''
        item = self.schema.to_schema(record)
        self._write(self.table.put_item, Item=item, **self._to_expression(condition))

    def update_record(self, partition_key, sort_key, fields, condition, remove=()):
        ''' Update some attributes of the lock row if the condition
        holds.

        :param partition_key: The partition key of the lock
        :param sort_key: The sort key of the lock
        :param fields: The attribute names and values to set
        :param condition: The condition the current row must meet
        :param remove: The attribute names to remove
        '''
        params = self._to_expression(condition)
        names, values = params['ExpressionAttributeNames'], params.setdefault('ExpressionAttributeValues', {})

        sets = []
        for index, (name, value) in enumerate(sorted(fields.items())):
            names['#u%d' % index]  = name
            values[':u%d' % index] = value
            sets.append('#u%d = :u%d' % (index, index))
        removes = []
        for index, name in enumerate(remove):
            names['#d%d' % index] = name
            removes.append('#d%d' % index)

        expression = []
        if sets:    expression.append('SET ' + ', '.join(sets))
        if removes: expression.append('REMOVE ' + ', '.join(removes))
        if not values: del params['ExpressionAttributeValues']

        self._write(self.table.update_item,
            Key=self.schema.to_key(partition_key, sort_key),
            UpdateExpression=' '.join(expression), **params)

    def delete_record(self, partition_key, sort_key, condition):
        ''' Delete the lock row if the condition holds.

        :param partition_key: The partition key of the lock
        :param sort_key: The sort key of the lock
        :param condition: The condition the current row must meet
        '''
        self._write(self.table.delete_item,
            Key=self.schema.to_key(partition_key, sort_key),
            **self._to_expression(condition))

    # ------------------------------------------------------------
    # raw dynamo methods
    # ------------------------------------------------------------

    def _write(self, operation, **params):
        try:
            operation(**params)
        except ClientError as ex:
            if is_condition_failure(ex):
                _logger.debug("condition %s failed", params.get('ConditionExpression'))
                raise ConditionFailedError(params.get('ConditionExpression')) from ex
            raise

    def _to_expression(self, condition):
        ''' Convert a condition to the dynamodb condition expression
        along with its attribute names and values.

        :param condition: The condition to convert
        :returns: The expression parameters of the request
        '''
        names = { '#pk': self.schema.partition_key }
        if not condition.exists:
            return { 'ConditionExpression': PK_NOT_EXISTS_CONDITION, 'ExpressionAttributeNames': names }

        values = {}
        if condition.version is not None:
            names['#rvn'] = self.schema.version
            values[':rvn'] = condition.version
        if condition.is_released is not None:
            names['#ir'] = self.schema.is_released
            values[':ir'] = condition.is_released

        if (condition.version is not None) and (condition.is_released is not None):
            expression = PK_EXISTS_AND_RVN_IS_THE_SAME_AND_IS_RELEASED_CONDITION
        elif condition.version is not None:
            expression = PK_EXISTS_AND_RVN_IS_THE_SAME_CONDITION
        elif condition.is_released is not None:
            expression = PK_EXISTS_AND_IS_RELEASED_CONDITION
        else:
            expression = "attribute_exists(#pk)"

        params = { 'ConditionExpression': expression, 'ExpressionAttributeNames': names }
        if values: params['ExpressionAttributeValues'] = values
        return params

    def __str__(self):
        return "DynamoDBLockStore(%s)" % self.schema.table_name

    __repr__ = __str__
