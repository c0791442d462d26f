"""
SQLAlchemy binding for the document store protocol.

Every collection is a table with the same fixed set of columns, which is
enough to hold both session documents and lock records:

+---------------+--------------+-------+----------------------------------+
| Column        | Type         | Key   | Holds                            |
+---------------+--------------+-------+----------------------------------+
| _id           | varchar(255) | PRI   | session id                       |
| started       | int(11)      |       | epoch seconds, sessions          |
| last_accessed | int(11)      | MUL   | epoch seconds, sessions          |
| data          | blob         |       | serialized session payload       |
| created       | int(11)      | MUL   | epoch seconds, locks             |
| mid           | varchar(255) |       | machine id, locks                |
+---------------+--------------+-------+----------------------------------+

The primary key on ``_id`` is what makes :meth:`SQLCollection.insert_unique`
usable as a lock: the database rejects a second row with the same id.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

from pytz import UTC
from sqlalchemy import Column, Index, Integer, LargeBinary, MetaData, \
    String, Table, create_engine, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from . import ACKNOWLEDGED, ASCENDING, Document, Durability, Filter
from .. import logging
from ..domain import as_utc
from ..exceptions import DuplicateKey, StoreError

logger = logging.getLogger(__name__)

TIMESTAMPS = ('started', 'last_accessed', 'created')
FIELDS = ('_id', 'started', 'last_accessed', 'data', 'created', 'mid')
MEMORY = ('sqlite://', 'sqlite:///:memory:')


def epoch(t: datetime) -> int:
    """Convert a :class:`.datetime` to UNIX time."""
    delta = as_utc(t) - datetime.fromtimestamp(0, tz=UTC)
    return int(round(delta.total_seconds()))


def from_epoch(t: int) -> datetime:
    """Get a :class:`datetime` from an UNIX timestamp."""
    return datetime.fromtimestamp(t, tz=UTC)


def _define(name: str, metadata: MetaData) -> Table:
    return Table(
        name, metadata,
        Column('_id', String(255), primary_key=True),
        Column('started', Integer),
        Column('last_accessed', Integer),
        Column('data', LargeBinary),
        Column('created', Integer),
        Column('mid', String(255))
    )


class SQLCollection(object):
    """A table of documents."""

    def __init__(self, store: 'SQLStore', table: Table) -> None:
        self.store = store
        self.table = table
        self.name = table.name

    def _to_value(self, field: str, value: Any) -> Any:
        if field not in FIELDS:
            raise StoreError(f'{self.name} has no field {field}')
        if field in TIMESTAMPS and isinstance(value, datetime):
            return epoch(value)
        return value

    def _to_row(self, document: Document) -> Dict[str, Any]:
        row: Dict[str, Any] = {field: None for field in FIELDS}
        for field, value in document.items():
            row[field] = self._to_value(field, value)
        return row

    def _to_document(self, row: Any) -> Document:
        document: Document = {}
        for field in FIELDS:
            value = row[field]
            if value is None:
                continue
            if field in TIMESTAMPS:
                value = from_epoch(value)
            elif field == 'data':
                value = bytes(value)
            document[field] = value
        return document

    def _where(self, filter: Filter) -> List[Any]:
        clauses = []
        for field, condition in filter.items():
            column = self.table.c[field] if field in FIELDS else None
            if column is None:
                raise StoreError(f'{self.name} has no field {field}')
            if isinstance(condition, dict):
                for operator, value in condition.items():
                    if operator != '$lt':
                        raise StoreError(f'Unsupported operator: {operator}')
                    clauses.append(column < self._to_value(field, value))
            else:
                clauses.append(column == self._to_value(field, condition))
        return clauses

    def _write(self, operation: str, durability: Durability,
               write: Callable[[Connection], None]) -> None:
        try:
            with self.store.transaction() as connection:
                write(connection)
        except SQLAlchemyError as e:
            if not durability.acknowledged:
                logger.warning('Unacknowledged %s on %s failed: %s',
                               operation, self.name, e)
                return
            if isinstance(e, IntegrityError):
                raise DuplicateKey(f'Duplicate key in {self.name}') from e
            raise StoreError(f'Failed to {operation} {self.name}: {e}') from e

    def find_one(self, filter: Filter) -> Optional[Document]:
        """Get the first document matching ``filter``, or ``None``."""
        statement = select(self.table).where(*self._where(filter)).limit(1)
        try:
            with self.store.transaction() as connection:
                row = connection.execute(statement).mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f'Failed to read {self.name}: {e}') from e
        if row is None:
            return None
        return self._to_document(row)

    def insert_unique(self, document: Document,
                      durability: Durability = ACKNOWLEDGED) -> None:
        """
        Insert a new document.

        Raises
        ------
        :class:`.DuplicateKey`
            A document with the same ``_id`` already exists.

        """
        row = self._to_row(document)

        def _insert(connection: Connection) -> None:
            connection.execute(insert(self.table).values(**row))
        self._write('insert into', durability, _insert)

    def save(self, document: Document,
             durability: Durability = ACKNOWLEDGED) -> None:
        """Insert ``document`` or replace the one with the same ``_id``."""
        row = self._to_row(document)
        key = self.table.c['_id']

        def _upsert(connection: Connection) -> None:
            result = connection.execute(
                update(self.table).where(key == row['_id']).values(**row)
            )
            if result.rowcount == 0:
                connection.execute(insert(self.table).values(**row))
        self._write('save to', durability, _upsert)

    def remove_by_id(self, document_id: str,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete the document with ``_id`` equal to ``document_id``."""
        self.remove_where({'_id': document_id}, durability)

    def remove_where(self, filter: Filter,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete every document matching ``filter``."""
        clauses = self._where(filter)

        def _delete(connection: Connection) -> None:
            connection.execute(delete(self.table).where(*clauses))
        self._write('remove from', durability, _delete)

    def create_index(self, fields: List[Tuple[str, int]]) -> None:
        """Create an index over ``fields`` if it does not exist."""
        name = '_'.join(['ix', self.name] + [field for field, _ in fields])
        for existing in self.table.indexes:
            if existing.name == name:
                index = existing
                break
        else:
            columns = [self.table.c[field] if direction == ASCENDING
                       else self.table.c[field].desc()
                       for field, direction in fields]
            index = Index(name, *columns)
        try:
            index.create(bind=self.store.engine, checkfirst=True)
        except SQLAlchemyError as e:
            raise StoreError(f'Failed to index {self.name}: {e}') from e


class SQLStore(object):
    """
    Keeps collections as tables in a relational database.

    The engine is thread safe and hands out a connection per transaction;
    this class holds the table definitions.
    """

    def __init__(self, engine: Engine) -> None:
        """Use an existing SQLAlchemy engine."""
        self.engine = engine
        self.metadata = MetaData()
        self._collections: Dict[str, SQLCollection] = {}
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Generator[Connection, None, None]:
        """Context manager for database transaction."""
        connection = self.engine.connect()
        transaction = connection.begin()
        try:
            yield connection
            transaction.commit()
        except Exception as e:
            logger.debug('Transaction failed, rolling back: %s', str(e))
            transaction.rollback()
            raise
        finally:
            connection.close()

    def select_collection(self, name: str) -> SQLCollection:
        """Get the table called ``name``, creating it if needed."""
        with self._lock:
            if name not in self._collections:
                table = _define(name, self.metadata)
                try:
                    table.create(bind=self.engine, checkfirst=True)
                except SQLAlchemyError as e:
                    self.metadata.remove(table)
                    raise StoreError(f'Failed to create {name}: {e}') from e
                self._collections[name] = SQLCollection(self, table)
            return self._collections[name]

    def drop_all(self) -> None:
        """Drop all tables created through this store."""
        with self._lock:
            self.metadata.drop_all(bind=self.engine)
            self._collections.clear()
            self.metadata.clear()


def connect(uri: str = 'sqlite://', **options: Any) -> SQLStore:
    """
    Open a :class:`SQLStore` on a database URI.

    An in-memory SQLite database is shared by every connection of the
    returned store, so that separate handlers see the same data.
    """
    if uri in MEMORY:
        options.setdefault('poolclass', StaticPool)
        options.setdefault('connect_args', {'check_same_thread': False})
    logger.debug('New database connection at %s', uri)
    return SQLStore(create_engine(uri, **options))
