"""Removes sessions that have not been used for a while."""

from datetime import timedelta
from typing import Optional
import logging as _logging

from . import logging
from .domain import now
from .stores import UNACKNOWLEDGED, Collection

logger = logging.getLogger(__name__)


class GarbageCollector(object):
    """
    Sweeps expired documents out of the session collection.

    The delete is not acknowledged: anything missed is picked up by the next
    sweep. Lock records are left alone; a lock on an expired session is
    expected to have been released when its request closed.
    """

    def __init__(self, sessions: Collection,
                 log: Optional[_logging.Logger] = None) -> None:
        self.sessions = sessions
        self.logger = log or logger

    def sweep(self, timeout: int) -> None:
        """Remove every session last accessed more than ``timeout`` s ago."""
        cutoff = now() - timedelta(seconds=timeout)
        self.logger.debug('Removing sessions last accessed before %s',
                          cutoff.isoformat())
        self.sessions.remove_where({'last_accessed': {'$lt': cutoff}},
                                   UNACKNOWLEDGED)
