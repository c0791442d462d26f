"""Tests for :mod:`docsession.stores.sql`."""

import threading
from datetime import datetime, timedelta
from unittest import TestCase, mock

from pytz import UTC
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError

from .. import ASCENDING, UNACKNOWLEDGED, sql
from ...domain import now
from ...exceptions import DuplicateKey, StoreError
from ...tests.util import temporary_store


class StoreTestCase(TestCase):
    """Provides an in-memory SQLite store."""

    def setUp(self):
        """Open an in-memory store."""
        self._store = temporary_store()
        self.store = self._store.__enter__()
        self.sessions = self.store.select_collection('sessions')

    def tearDown(self):
        """Throw the store away."""
        self._store.__exit__(None, None, None)

    def document(self, session_id='abc123', age=0, data=b'foo'):
        t = now() - timedelta(seconds=age)
        return {'_id': session_id, 'started': t, 'last_accessed': t,
                'data': data}


class TestEpoch(TestCase):
    """Timestamps are stored as UNIX time."""

    def test_epoch(self):
        """Aware and naive UTC times give the same value."""
        aware = datetime(2018, 3, 2, 12, 30, 15, tzinfo=UTC)
        naive = datetime(2018, 3, 2, 12, 30, 15)
        self.assertEqual(sql.epoch(aware), 1519993815)
        self.assertEqual(sql.epoch(naive), 1519993815)
        self.assertEqual(sql.from_epoch(1519993815), aware)


class TestInsertUnique(StoreTestCase):
    """Tests for :meth:`sql.SQLCollection.insert_unique`."""

    def test_insert(self):
        """A new document can be found again."""
        self.sessions.insert_unique(self.document())
        found = self.sessions.find_one({'_id': 'abc123'})
        self.assertEqual(found['_id'], 'abc123')
        self.assertEqual(found['data'], b'foo')
        self.assertNotIn('created', found, 'Empty fields are left out')

    def test_duplicate(self):
        """A second document with the same id is refused."""
        self.sessions.insert_unique(self.document())
        with self.assertRaises(DuplicateKey):
            self.sessions.insert_unique(self.document(data=b'bar'))
        self.assertEqual(self.sessions.find_one({'_id': 'abc123'})['data'],
                         b'foo')

    @mock.patch(f'{sql.__name__}.logger')
    def test_duplicate_unacknowledged(self, mock_logger):
        """Without acknowledgment, the failure is only logged."""
        self.sessions.insert_unique(self.document())
        self.sessions.insert_unique(self.document(data=b'bar'),
                                    UNACKNOWLEDGED)
        self.assertEqual(mock_logger.warning.call_count, 1)

    def test_timestamps(self):
        """Times come back in UTC, to the second."""
        document = self.document()
        self.sessions.insert_unique(document)
        found = self.sessions.find_one({'_id': 'abc123'})
        self.assertEqual(found['started'].utcoffset(), timedelta(0))
        self.assertLessEqual(abs(found['started'] - document['started']),
                             timedelta(seconds=1))


class TestSave(StoreTestCase):
    """Tests for :meth:`sql.SQLCollection.save`."""

    def test_insert(self):
        """A document that does not exist is created."""
        self.sessions.save(self.document())
        self.assertIsNotNone(self.sessions.find_one({'_id': 'abc123'}))

    def test_replace(self):
        """An existing document is replaced."""
        self.sessions.save(self.document())
        self.sessions.save(self.document(data=b'bar'))
        self.assertEqual(self.sessions.find_one({'_id': 'abc123'})['data'],
                         b'bar')

    def test_binary(self):
        """Payloads are stored byte for byte."""
        payload = bytes(range(256)) + b'\x00'
        self.sessions.save(self.document(data=payload))
        self.assertEqual(self.sessions.find_one({'_id': 'abc123'})['data'],
                         payload)

    def test_empty(self):
        """An empty payload is kept."""
        self.sessions.save(self.document(data=b''))
        self.assertEqual(self.sessions.find_one({'_id': 'abc123'})['data'],
                         b'')


class TestRemove(StoreTestCase):
    """Tests for removing documents."""

    def test_remove_by_id(self):
        """Only the document with that id is removed."""
        self.sessions.save(self.document('abc123'))
        self.sessions.save(self.document('def456'))
        self.sessions.remove_by_id('abc123')
        self.assertIsNone(self.sessions.find_one({'_id': 'abc123'}))
        self.assertIsNotNone(self.sessions.find_one({'_id': 'def456'}))

    def test_remove_missing(self):
        """Removing a document that does not exist is fine."""
        self.sessions.remove_by_id('nope')

    def test_remove_where(self):
        """Documents older than a cutoff are removed."""
        self.sessions.save(self.document('old', age=120))
        self.sessions.save(self.document('new', age=10))
        cutoff = now() - timedelta(seconds=60)
        self.sessions.remove_where({'last_accessed': {'$lt': cutoff}},
                                   UNACKNOWLEDGED)
        self.assertIsNone(self.sessions.find_one({'_id': 'old'}))
        self.assertIsNotNone(self.sessions.find_one({'_id': 'new'}))

    def test_remove_where_id_and_time(self):
        """Conditions on several fields must all hold."""
        self.sessions.save(self.document('abc123', age=120))
        self.sessions.remove_where({
            '_id': 'abc123',
            'last_accessed': {'$lt': now() - timedelta(seconds=300)}
        })
        self.assertIsNotNone(self.sessions.find_one({'_id': 'abc123'}))


class TestFilters(StoreTestCase):
    """Only the filters the handler needs are supported."""

    def test_unknown_field(self):
        """A field that is not a column cannot be queried."""
        with self.assertRaises(StoreError):
            self.sessions.find_one({'user': 'foo'})
        with self.assertRaises(StoreError):
            self.sessions.remove_where({'user': 'foo'})

    def test_unknown_operator(self):
        """Only ``$lt`` is supported."""
        with self.assertRaises(StoreError):
            self.sessions.find_one({'last_accessed': {'$gt': now()}})

    def test_unknown_field_in_document(self):
        """A document with an unknown field cannot be stored."""
        with self.assertRaises(StoreError):
            self.sessions.save({'_id': 'abc123', 'user': 'foo'})


class TestStoreFailure(StoreTestCase):
    """Driver errors are translated."""

    def setUp(self):
        """Make every transaction fail."""
        super(TestStoreFailure, self).setUp()
        error = OperationalError('SELECT 1', {}, Exception('gone away'))
        self.patcher = mock.patch.object(self.store, 'transaction',
                                         side_effect=error)
        self.patcher.start()

    def tearDown(self):
        """Let transactions through again."""
        self.patcher.stop()
        super(TestStoreFailure, self).tearDown()

    def test_read(self):
        """A failed read raises :class:`.StoreError`."""
        with self.assertRaises(StoreError):
            self.sessions.find_one({'_id': 'abc123'})

    def test_write(self):
        """A failed write is not mistaken for a duplicate key."""
        with self.assertRaises(StoreError) as ctx:
            self.sessions.save(self.document())
        self.assertNotIsInstance(ctx.exception, DuplicateKey)

    @mock.patch(f'{sql.__name__}.logger')
    def test_write_unacknowledged(self, mock_logger):
        """A failed unacknowledged write is logged."""
        self.sessions.remove_by_id('abc123', UNACKNOWLEDGED)
        self.assertEqual(mock_logger.warning.call_count, 1)


class TestCollections(StoreTestCase):
    """Tests for :meth:`sql.SQLStore.select_collection`."""

    def test_same_collection(self):
        """A collection is only defined once."""
        self.assertIs(self.store.select_collection('sessions'),
                      self.sessions)

    def test_separate_collections(self):
        """Collections do not share documents."""
        locks = self.store.select_collection('sessions_lock')
        locks.insert_unique({'_id': 'abc123', 'created': now()})
        self.assertIsNone(self.sessions.find_one({'_id': 'abc123'}))
        self.sessions.insert_unique(self.document())

    def test_shared_memory_database(self):
        """Connections from the same store see the same data."""
        self.sessions.save(self.document())
        with self.store.engine.connect() as connection:
            tables = inspect(connection).get_table_names()
        self.assertIn('sessions', tables)

    def test_create_index(self):
        """Indexes are created once."""
        self.sessions.create_index([('last_accessed', ASCENDING)])
        self.sessions.create_index([('last_accessed', ASCENDING)])
        indexes = inspect(self.store.engine).get_indexes('sessions')
        self.assertEqual([index['name'] for index in indexes],
                         ['ix_sessions_last_accessed'])


class TestConcurrentSelect(TestCase):
    """Threads that start at the same time share one table definition."""

    def test_select_collection(self):
        """Every thread gets the same collection and none fails."""
        start = threading.Barrier(8)
        selected = []
        errors = []

        def select():
            try:
                start.wait()
                selected.append((store.select_collection('sessions'),
                                 store.select_collection('sessions_lock')))
            except Exception as e:
                errors.append(e)

        with temporary_store() as store:
            threads = [threading.Thread(target=select) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

            self.assertEqual(errors, [])
            self.assertEqual(len(selected), 8)
            self.assertEqual(len(set(selected)), 1)
            sessions, _ = selected[0]
            sessions.insert_unique({'_id': 'abc123', 'created': now()})
            self.assertIsNotNone(sessions.find_one({'_id': 'abc123'}))
