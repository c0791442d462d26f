"""
Server-side sessions kept in a shared document store.

Several server processes can serve requests for the same session. Requests
for one session id are serialized with a lock that lives in the store
itself: a record in a lock collection whose ``_id`` is the session id. The
store's unique key on ``_id`` guarantees that only one process can insert
it.

Quick start
-----------

1. Connect a store once per process, with :func:`.stores.mongo.connect` or
   :func:`.stores.sql.connect`.
2. Build a :class:`.SessionHandler` for each request with
   :func:`.create_handler`, and call ``open``, ``read``, ``write`` and
   ``close`` around the request.
3. Run :meth:`.SessionHandler.build_indexes` once when deploying, and
   :meth:`.SessionHandler.gc` from time to time.

Flask applications can install :class:`.interface.DocumentSessions`
instead of doing 2. by hand.
"""

from .config import SessionConfig, from_mapping
from .domain import LockRecord, SessionDocument
from .exceptions import ConfigurationError, DuplicateKey, \
    DurabilityTimeout, LockError, LockTimeout, StoreError
from .handler import SessionHandler, create_handler
