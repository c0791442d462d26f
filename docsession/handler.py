"""
The six session operations called by the host, plus index maintenance.

A request goes through ``open``, ``read``, any number of ``write`` calls,
and ``close``. ``read`` takes the session lock and ``close`` gives it back,
so for a given session id at most one request at a time is between the
two. ``destroy`` and ``gc`` can be called at any point.

Build handlers with :func:`create_handler`, one per request:

.. code-block:: python

   from docsession import create_handler
   from docsession.stores import mongo

   store = mongo.connect('mongodb://localhost:27017', 'mySessDb')
   handler = create_handler(store, lock_timeout=5)
   data = handler.read(session_id)
   ...
   handler.write(session_id, data)
   handler.close()

"""

from typing import Any, Optional

from . import logging
from .config import DEFAULTS, SessionConfig, validate
from .gc import GarbageCollector
from .locks import LockManager
from .repository import SessionRepository
from .stores import ASCENDING, Store

logger = logging.getLogger(__name__)


class SessionHandler(object):
    """
    Serializes access to sessions kept in a shared document store.

    Holds the lock ownership and the loaded document of the current
    request, so an instance must not be shared between concurrent requests.
    """

    def __init__(self, store: Store, config: SessionConfig = DEFAULTS) \
            -> None:
        """
        Bind a handler to its collections.

        Parameters
        ----------
        store : :class:`.stores.Store`
            An already connected store.
        config : :class:`.SessionConfig`

        """
        self.config = validate(config)
        self.logger = config.logger or logger
        self.sessions = store.select_collection(config.collection)
        self.lock_records = store.select_collection(config.lock_collection)
        self.locks = LockManager(self.lock_records, config)
        self.repository = SessionRepository(self.sessions, self.locks, config)
        self.collector = GarbageCollector(self.sessions, config.logger)

    @property
    def session_id(self) -> Optional[str]:
        """The session id this handler is currently bound to."""
        return self.repository.session_id

    def build_indexes(self) -> None:
        """
        Create the indexes used by garbage collection and lock cleanup.

        Run this once, e.g. from a deployment script, not on every request.
        """
        self.logger.info('maint: create_index on %s', self.sessions.name)
        self.sessions.create_index([('last_accessed', ASCENDING)])
        self.logger.info('maint: create_index on %s', self.lock_records.name)
        self.lock_records.create_index([('created', ASCENDING)])

    def open(self, path: str = '', name: str = '') -> bool:
        """
        Start handling a request.

        The store is connected before the handler is built, so there is
        nothing to do here.
        """
        return True

    def read(self, session_id: str) -> bytes:
        """
        Lock the session and get its data.

        Returns an empty payload for a session that has not been written.

        Raises
        ------
        :class:`.LockTimeout`
            The lock could not be acquired; the request must not continue.

        """
        return self.repository.load_or_init(session_id)

    def write(self, session_id: str, data: bytes) -> bool:
        """
        Save the session data.

        ``session_id`` may differ from the id passed to :meth:`read` if the
        host regenerated it; the lock then moves to the new id.
        """
        self.repository.persist(session_id, data)
        return True

    def close(self) -> bool:
        """
        Release the lock taken by this handler.

        With ``clean_on_close`` set, also runs garbage collection.
        """
        self.locks.release(self.session_id)
        if self.config.clean_on_close:
            self.gc()
        return True

    def destroy(self, session_id: str) -> bool:
        """
        Delete a session and its lock.

        The lock is removed whether or not this handler holds it.
        """
        self.repository.remove(session_id)
        self.locks.release(session_id, force=True)
        return True

    def gc(self, max_lifetime: Optional[int] = None) -> bool:
        """
        Remove expired sessions.

        Parameters
        ----------
        max_lifetime : int
            Seconds since last access after which a session expires.
            Defaults to the configured ``timeout``.

        """
        if max_lifetime is None:
            max_lifetime = self.config.timeout
        self.collector.sweep(max_lifetime)
        return True


def create_handler(store: Store, config: Optional[SessionConfig] = None,
                   **overrides: Any) -> SessionHandler:
    """
    Build a :class:`SessionHandler` for one request.

    Parameters
    ----------
    store : :class:`.stores.Store`
        An already connected store, usually shared by the whole process.
    config : :class:`.SessionConfig`
        Defaults to :data:`.config.DEFAULTS`.
    overrides
        Replace individual configuration fields.

    """
    config = (config or DEFAULTS)._replace(**overrides)
    return SessionHandler(store, config)
