"""
Logging for the session store.

Wraps the standard library so that every logger in the package writes
structured (JSON) records to a stream. The level is read from the
``LOGLEVEL`` environment variable.
"""

import os
import sys
import logging
from typing import IO, Any

from pythonjsonlogger import jsonlogger

FORMAT = '%(asctime)s %(levelname)s %(name)s %(message)s'
RENAME = {'levelname': 'level', 'asctime': 'timestamp'}


def getLogger(name: str, stream: IO[Any] = sys.stderr) -> logging.Logger:
    """
    Get a logger with a JSON stream handler.

    Parameters
    ----------
    name : str
        Usually ``__name__`` of the calling module.
    stream : file-like
        Where log records are written. Defaults to stderr.

    Returns
    -------
    :class:`logging.Logger`

    """
    logger = logging.getLogger(name)
    if not any(getattr(h, '_docsession', False) for h in logger.handlers):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(jsonlogger.JsonFormatter(FORMAT,
                                                      rename_fields=RENAME))
        handler._docsession = True     # type: ignore
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(os.environ.get('LOGLEVEL', 'INFO').upper())
    return logger
