"""
Document store bindings.

The session handler talks to its store only through the :class:`Store` and
:class:`Collection` protocols below. A binding is chosen once, when the
application is composed:

- :mod:`.mongo` wraps a :class:`pymongo.database.Database`.
- :mod:`.sql` keeps documents in SQLAlchemy tables.

Filters are MongoDB-style dictionaries. Bindings are only required to
support equality (``{'_id': 'abc'}``) and "less than"
(``{'last_accessed': {'$lt': cutoff}}``).

Bindings translate their driver's exceptions into
:class:`.exceptions.StoreError` and its subclasses; a failed
``insert_unique`` because of an existing ``_id`` raises
:class:`.exceptions.DuplicateKey`.
"""

from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Tuple

Document = Dict[str, Any]
Filter = Dict[str, Any]

ASCENDING = 1
DESCENDING = -1


class Durability(NamedTuple):
    """Acknowledgment requested from the store for a write."""

    w: int = 1
    """Number of members that must acknowledge. ``0`` is fire-and-forget."""

    journal: bool = False
    """Wait for the write to reach the on-disk journal."""

    timeout: Optional[int] = None
    """Milliseconds to wait for acknowledgment before giving up."""

    @property
    def acknowledged(self) -> bool:
        """Whether the caller waits to learn the outcome of the write."""
        return self.w != 0


ACKNOWLEDGED = Durability()
UNACKNOWLEDGED = Durability(w=0)


class Collection(Protocol):
    """A named set of documents keyed by ``_id``."""

    name: str

    def find_one(self, filter: Filter) -> Optional[Document]:
        """Get the first document matching ``filter``, or ``None``."""
        ...

    def insert_unique(self, document: Document,
                      durability: Durability = ACKNOWLEDGED) -> None:
        """Insert ``document``; raise :class:`.DuplicateKey` if its id exists."""
        ...

    def save(self, document: Document,
             durability: Durability = ACKNOWLEDGED) -> None:
        """Insert ``document`` or replace the one with the same ``_id``."""
        ...

    def remove_by_id(self, document_id: str,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete the document with ``_id`` equal to ``document_id``."""
        ...

    def remove_where(self, filter: Filter,
                     durability: Durability = ACKNOWLEDGED) -> None:
        """Delete every document matching ``filter``."""
        ...

    def create_index(self, fields: List[Tuple[str, int]]) -> None:
        """Create an index over ``fields`` if it does not exist."""
        ...


class Store(Protocol):
    """A connected database holding collections."""

    def select_collection(self, name: str) -> Collection:
        """Get the collection called ``name``, creating it if needed."""
        ...
