"""Reads and writes the session document for the current request."""

from typing import Optional

from . import logging
from .config import SessionConfig
from .domain import SessionDocument, now
from .locks import LockManager
from .stores import Collection

logger = logging.getLogger(__name__)


class SessionRepository(object):
    """
    Owns the session document of one request.

    Tracks the id the request is bound to, so that a write under a
    different id (the host regenerated the session id) can move the lock
    and the document over to the new id.
    """

    def __init__(self, sessions: Collection, locks: LockManager,
                 config: SessionConfig) -> None:
        self.sessions = sessions
        self.locks = locks
        self.config = config
        self.logger = config.logger or logger
        self.session_id: Optional[str] = None
        self.document: Optional[SessionDocument] = None

    def load_or_init(self, session_id: str) -> bytes:
        """
        Lock ``session_id`` and get its payload.

        A session that has never been written has an empty payload. No
        document is created until the first :meth:`persist`.

        Parameters
        ----------
        session_id : str

        Returns
        -------
        bytes

        """
        self.session_id = session_id
        self.locks.acquire(session_id)

        found = self.sessions.find_one({'_id': session_id})
        if found is None:
            self.document = None
            return b''
        self.document = SessionDocument.from_document(found)
        return self.document.data

    def rotate(self, session_id: str) -> None:
        """
        Rebind to a new session id.

        The lock on the old id is released, and the document under the old
        id is left as it is. Only the in-memory document moves.
        """
        old = self.session_id
        self.logger.debug('Session id changed from %s to %s',
                          old, session_id)
        if old is not None and self.config.release_on_rotation:
            self.locks.release(old, force=True)
        self.session_id = session_id
        self.locks.acquire(session_id)
        if self.document is not None:
            self.document = self.document._replace(session_id=session_id)

    def persist(self, session_id: str, payload: bytes) -> None:
        """
        Save ``payload`` as the session data of ``session_id``.

        Creates the document on the first write. Writing under an id other
        than the one that was loaded moves the lock to the new id first.
        """
        if self.document is None:
            self.document = SessionDocument(session_id=session_id,
                                            started=now())
        if self.session_id != session_id:
            self.rotate(session_id)

        self.document = self.document.touch(payload)
        self.sessions.save(self.document.to_document(),
                           self.config.durability)

    def remove(self, session_id: str) -> None:
        """Delete the session document of ``session_id``."""
        self.sessions.remove_by_id(session_id, self.config.durability)
        if session_id == self.session_id:
            self.document = None
