"""
Session locks kept in the document store.

There is no lock service: a session is locked by inserting a record with
the session id as its ``_id`` into the lock collection. The store refuses a
second record with the same id, so at most one process can hold the lock.
Other processes poll until the record is gone or their budget runs out.

Locking is advisory. Anything that writes session documents without taking
the lock first is not excluded.
"""

import time
from datetime import datetime, timedelta
from typing import Optional, Set

from . import logging
from .config import SessionConfig
from .domain import LockRecord, now
from .exceptions import DuplicateKey, DurabilityTimeout, LockError, \
    LockTimeout, StoreError
from .stores import UNACKNOWLEDGED, Collection

logger = logging.getLogger(__name__)


class LockManager(object):
    """
    Acquires and releases session locks on behalf of one handler.

    Remembers which locks it acquired, and will only release those unless
    told to force it. A :class:`LockManager` must not be shared between
    concurrent requests.
    """

    def __init__(self, locks: Collection, config: SessionConfig) -> None:
        self.locks = locks
        self.config = config
        self.logger = config.logger or logger
        self._owned: Set[str] = set()

    @property
    def acquired(self) -> bool:
        """Whether this manager currently holds any lock."""
        return bool(self._owned)

    def owns(self, session_id: str) -> bool:
        """Whether this manager acquired the lock on ``session_id``."""
        return session_id in self._owned

    def _expiry(self) -> Optional[datetime]:
        if self.config.lock_lease is None:
            return None
        return now() - timedelta(seconds=self.config.lock_lease)

    def _steal(self, record: LockRecord, cutoff: datetime) -> None:
        # Only removes the record if it is still an expired one.
        self.logger.warning('Lock on %s created @ %s has expired',
                            record.session_id, record.created.isoformat())
        self.locks.remove_where({'_id': record.session_id,
                                 'created': {'$lt': cutoff}},
                                self.config.durability)

    def try_acquire(self, session_id: str) -> bool:
        """
        Attempt to lock ``session_id``, waiting up to ``lock_timeout``.

        Returns
        -------
        bool
            ``True`` if the lock is held by this manager, ``False`` if
            another process kept it for the whole wait.

        Raises
        ------
        :class:`.LockError`
            The store failed while we tried to take the lock.

        """
        if self.owns(session_id):
            return True

        timeout = int(round(self.config.lock_timeout * 1000000))   # usec
        sleep = self.config.lock_sleep * 1000
        start = time.monotonic()
        waited = False
        stolen = False     # At most one takeover per poll.

        self.logger.debug('Trying to acquire a lock on %s', session_id)
        while True:
            try:
                found = self.locks.find_one({'_id': session_id})
                expiry = self._expiry()
                if found is not None and expiry is not None and not stolen:
                    record = LockRecord.from_document(found)
                    if record.created < expiry:
                        self._steal(record, expiry)
                        stolen = True
                        continue
            except StoreError as e:
                self.logger.error('exception: %s', e)
                raise LockError(f'Could not acquire lock for {session_id}') \
                    from e

            if found is None:
                lock = LockRecord(session_id, now(), self.config.machine_id)
                try:
                    self.locks.insert_unique(lock.to_document(),
                                             self.config.durability)
                except DuplicateKey:
                    continue    # Lost the race to another process.
                except DurabilityTimeout as e:
                    # The record may or may not be there; remove it rather
                    # than lock everyone out of this session.
                    self.logger.error('exception: %s', e)
                    self.release(session_id, force=True)
                    raise LockError(
                        f'Could not acquire lock for {session_id}'
                    ) from e
                except StoreError as e:
                    self.logger.error('exception: %s', e)
                    raise LockError(
                        f'Could not acquire lock for {session_id}'
                    ) from e

                self._owned.add(session_id)
                self.logger.debug('Lock acquired @ %s',
                                  lock.created.isoformat())
                if waited:
                    self.logger.info('LOCK_WAIT_SECONDS:%.5f',
                                     time.monotonic() - start)
                return True

            time.sleep(sleep / 1000000)
            waited = True
            stolen = False
            timeout -= sleep
            if timeout <= 0:
                return False

    def acquire(self, session_id: str) -> bool:
        """
        Lock ``session_id`` or abort the request.

        Proceeding without the lock would let two requests overwrite each
        other's session, so failure is fatal: the configured
        ``error_handler`` is called with a message, and the error is raised
        whether or not the handler returns.

        Raises
        ------
        :class:`.LockTimeout`
            Another process held the lock for the whole wait.
        :class:`.LockError`
            The store failed while we tried to take the lock.

        """
        error: Optional[LockError] = None
        try:
            if self.try_acquire(session_id):
                return True
        except LockError as e:
            error = e
            self.logger.critical('PANIC! %s cannot be acquired: %s',
                                 session_id, e.__cause__ or e)
        if error is None:
            error = LockTimeout(f'Could not acquire lock for {session_id}')
            self.logger.critical('PANIC! %s cannot be acquired after'
                                 ' waiting for %ss.', session_id,
                                 self.config.lock_timeout)
        if self.config.error_handler is not None:
            self.config.error_handler(str(error))
        raise error

    def release(self, session_id: Optional[str], force: bool = False) \
            -> bool:
        """
        Remove the lock on ``session_id`` if this manager acquired it.

        Parameters
        ----------
        session_id : str
        force : bool
            Remove the lock record even if another process holds it. The
            delete is not acknowledged, so that cleanup does not wait on a
            store that is already struggling.

        Returns
        -------
        bool
            Whether a delete was issued.

        """
        if session_id is None:
            return False
        if not force and not self.owns(session_id):
            return False
        self._owned.discard(session_id)
        durability = UNACKNOWLEDGED if force else self.config.durability
        self.locks.remove_by_id(session_id, durability)
        self.logger.debug('Lock released on %s', session_id)
        return True
