"""
MongoDB binding for the document store protocol.

Lock acquisition relies on the unique index MongoDB always keeps on
``_id``: :meth:`MongoCollection.insert_unique` fails with a duplicate key
error when another process got there first.
"""

import re
from typing import Any, List, Optional, Tuple

from pymongo import MongoClient
from pymongo.collection import Collection as PyMongoCollection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, OperationFailure, \
    PyMongoError, WriteConcernError, WTimeoutError
from pymongo.write_concern import WriteConcern

from . import ACKNOWLEDGED, Document, Durability, Filter
from .. import logging
from ..exceptions import DuplicateKey, DurabilityTimeout, StoreError

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODES = (11000, 11001, 12582)
WRITE_CONCERN_FAILED = 64
REPLICATION_TIMED_OUT = re.compile(r'replication timed out', re.I)


def write_concern(durability: Durability) -> WriteConcern:
    """Get the MongoDB write concern for a :class:`.Durability`."""
    if not durability.acknowledged:
        return WriteConcern(w=0)
    return WriteConcern(w=durability.w, j=durability.journal or None,
                        wtimeout=durability.timeout)


def translate(e: PyMongoError, message: str) -> StoreError:
    """Get the :class:`.StoreError` that corresponds to a driver error."""
    if isinstance(e, DuplicateKeyError):
        return DuplicateKey(f'{message}: {e}')
    if isinstance(e, WTimeoutError):
        return DurabilityTimeout(f'{message}: {e}')
    if isinstance(e, OperationFailure):
        if e.code in DUPLICATE_KEY_CODES:
            return DuplicateKey(f'{message}: {e}')
        if isinstance(e, WriteConcernError) \
                and e.code == WRITE_CONCERN_FAILED:
            return DurabilityTimeout(f'{message}: {e}')
    if REPLICATION_TIMED_OUT.search(str(e)):
        return DurabilityTimeout(f'{message}: {e}')
    return StoreError(f'{message}: {e}')


class MongoCollection(object):
    """A MongoDB collection."""

    def __init__(self, collection: PyMongoCollection) -> None:
        self._collection = collection
        self.name = collection.name

    def _with(self, durability: Durability) -> PyMongoCollection:
        return self._collection.with_options(
            write_concern=write_concern(durability)
        )

    def _failed(self, e: PyMongoError, operation: str,
                durability: Durability) -> None:
        if not durability.acknowledged:
            logger.warning('Unacknowledged %s on %s failed: %s',
                           operation, self.name, e)
            return
        raise translate(e, f'Failed to {operation} {self.name}') from e

    def find_one(self, filter: Filter) -> Optional[Document]:
        """Get the first document matching ``filter``, or ``None``."""
        try:
            document: Optional[Document] = self._collection.find_one(filter)
        except PyMongoError as e:
            raise translate(e, f'Failed to read {self.name}') from e
        return document

    def insert_unique(self, document: Document,
                      durability: Durability = ACKNOWLEDGED) -> None:
        """
        Insert a new document.

        Raises
        ------
        :class:`.DuplicateKey`
            A document with the same ``_id`` already exists.
        :class:`.DurabilityTimeout`
            Replication did not acknowledge the write in time. The document
            may have been written.

        """
        try:
            self._with(durability).insert_one(dict(document))
        except PyMongoError as e:
            self._failed(e, 'insert into', durability)

    def save(self, document: Document,
             durability: Durability = ACKNOWLEDGED) -> None:
        """Insert ``document`` or replace the one with the same ``_id``."""
        try:
            self._with(durability).replace_one({'_id': document['_id']},
                                               dict(document), upsert=True)
        except PyMongoError as e:
            self._failed(e, 'save to', durability)

    def remove_by_id(self, document_id: str,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete the document with ``_id`` equal to ``document_id``."""
        try:
            self._with(durability).delete_one({'_id': document_id})
        except PyMongoError as e:
            self._failed(e, 'remove from', durability)

    def remove_where(self, filter: Filter,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete every document matching ``filter``."""
        try:
            self._with(durability).delete_many(filter)
        except PyMongoError as e:
            self._failed(e, 'remove from', durability)

    def create_index(self, fields: List[Tuple[str, int]]) -> None:
        """Create an index over ``fields`` if it does not exist."""
        try:
            self._collection.create_index(fields)
        except PyMongoError as e:
            raise translate(e, f'Failed to index {self.name}') from e


class MongoStore(object):
    """
    Keeps collections in a MongoDB database.

    The :class:`pymongo.MongoClient` is thread safe and pools its own
    connections; this class simply provides a container for the database.
    """

    def __init__(self, database: Database) -> None:
        """Use an existing database handle."""
        self.database = database

    def select_collection(self, name: str) -> MongoCollection:
        """Get the collection called ``name``."""
        return MongoCollection(self.database[name])


def connect(uri: str = 'mongodb://localhost:27017',
            database: str = 'sessions', **options: Any) -> MongoStore:
    """
    Open a :class:`MongoStore`.

    Parameters
    ----------
    uri : str
        MongoDB connection string.
    database : str
        Name of the database that holds the session collections.
    options
        Passed to :class:`pymongo.MongoClient`.

    """
    logger.debug('New MongoDB connection at %s, database %s', uri, database)
    return MongoStore(MongoClient(uri, **options)[database])
