"""Documents kept in the session and lock collections."""

from typing import Any, Dict, NamedTuple, Optional
from datetime import datetime

from pytz import UTC


def now() -> datetime:
    """Get the current time in UTC, truncated to milliseconds."""
    t = datetime.now(tz=UTC)
    return t.replace(microsecond=(t.microsecond // 1000) * 1000)


def as_utc(t: datetime) -> datetime:
    """Attach UTC to a naive :class:`datetime` returned by a driver."""
    if t.tzinfo is None:
        return UTC.localize(t)
    return t.astimezone(UTC)


class SessionDocument(NamedTuple):
    """
    Server-side state of one session.

    ``data`` is whatever the host serialized; it is stored as raw bytes and
    never decoded here.
    """

    session_id: str
    """Primary key, assigned by the host."""

    started: datetime
    """Set once, when the document is first created."""

    last_accessed: Optional[datetime] = None
    """Updated on every write. Garbage collection keys on this."""

    data: bytes = b''
    """Serialized session payload."""

    def touch(self, data: bytes) -> 'SessionDocument':
        """Get a copy carrying ``data``, accessed now."""
        accessed = now()
        if self.last_accessed is not None and accessed < self.last_accessed:
            accessed = self.last_accessed
        return self._replace(last_accessed=accessed, data=data)

    def to_document(self) -> Dict[str, Any]:
        """Get the stored representation of this session."""
        return {
            '_id': self.session_id,
            'started': self.started,
            'last_accessed': self.last_accessed,
            'data': self.data
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'SessionDocument':
        """Load a :class:`SessionDocument` from its stored representation."""
        last_accessed = document.get('last_accessed')
        return cls(
            session_id=document['_id'],
            started=as_utc(document['started']),
            last_accessed=as_utc(last_accessed) if last_accessed else None,
            data=bytes(document.get('data') or b'')
        )


class LockRecord(NamedTuple):
    """
    Marks a session as in use by some process.

    The record's existence is what excludes other processes; its fields are
    only informative.
    """

    session_id: str
    created: datetime
    machine_id: Optional[str] = None
    """Identifies the process that holds the lock, for debugging."""

    def to_document(self) -> Dict[str, Any]:
        """Get the stored representation of this lock."""
        document: Dict[str, Any] = {'_id': self.session_id,
                                    'created': self.created}
        if self.machine_id:
            document['mid'] = self.machine_id
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'LockRecord':
        """Load a :class:`LockRecord` from its stored representation."""
        return cls(session_id=document['_id'],
                   created=as_utc(document['created']),
                   machine_id=document.get('mid'))
