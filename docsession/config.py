"""
Session store configuration.

A :class:`SessionConfig` is built once, when the application starts, and
handed to :func:`docsession.handler.create_handler`. It is immutable; use
``config._replace(...)`` to derive a variant.

Values can be read from any mapping of upper-case keys, e.g. a Flask
``app.config`` or ``os.environ``:

.. code-block:: python

   config = from_mapping(os.environ, machine_id=socket.gethostname())

"""

from typing import Any, Callable, Mapping, NamedTuple, Optional
import logging

from .stores import Durability
from .exceptions import ConfigurationError

CACHE_LIMITERS = ('nocache', 'private', 'private_no_expire', 'public', '')


class SessionConfig(NamedTuple):
    """Resolved configuration for a session handler."""

    collection: str = 'sessions'
    """Collection holding session documents."""

    lock_collection: str = 'sessions_lock'
    """Collection holding lock records."""

    timeout: int = 3600
    """Seconds of inactivity after which a session may be collected."""

    lock_timeout: float = 30.0
    """Seconds to wait for a session lock before giving up."""

    lock_sleep: int = 100
    """Milliseconds to sleep between attempts to take a session lock."""

    clean_on_close: bool = False
    """
    Run garbage collection every time a session is closed.

    Useful in tests. Do not enable on a busy site.
    """

    machine_id: Optional[str] = None
    """Tag stored on lock records to identify the holder."""

    durability: Durability = Durability()
    """Acknowledgment requested for ordinary writes."""

    error_handler: Optional[Callable[[str], Any]] = None
    """Called with a message when a lock cannot be acquired."""

    logger: Optional[logging.Logger] = None
    """Where to write diagnostics. Defaults to the package logger."""

    release_on_rotation: bool = True
    """
    Force-release the old lock when the session id changes mid-request.

    ``False`` keeps the legacy behavior: the old lock is left in place
    until it is removed by hand or taken over under a ``lock_lease``.
    """

    lock_lease: Optional[float] = None
    """
    Seconds after which a lock is considered abandoned and may be taken.

    Off by default: a lock left behind by a crashed process otherwise blocks
    its session until the record is removed by hand.
    """

    name: str = 'session'
    """Name of the session id cookie."""

    cookie_path: str = '/'
    cookie_domain: Optional[str] = None
    cookie_secure: bool = False
    cookie_httponly: bool = False

    cache_limiter: str = 'private_no_expire'
    """HTTP caching policy for responses that carry a session."""

    cache_expiry: int = 10
    """Minutes that a cacheable response stays fresh."""


DEFAULTS = SessionConfig()


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _optional(value: Any) -> Optional[str]:
    if value is None or value is False or value == '':
        return None
    return str(value)


def validate(config: SessionConfig) -> SessionConfig:
    """
    Check that ``config`` is usable.

    Raises
    ------
    :class:`.ConfigurationError`

    """
    if config.timeout < 0:
        raise ConfigurationError('timeout must not be negative')
    if config.lock_timeout < 0:
        raise ConfigurationError('lock_timeout must not be negative')
    if config.lock_sleep <= 0:
        raise ConfigurationError('lock_sleep must be positive')
    if config.lock_lease is not None and config.lock_lease <= 0:
        raise ConfigurationError('lock_lease must be positive')
    if config.durability.w < 0:
        raise ConfigurationError('write concern must not be negative')
    if config.cache_limiter not in CACHE_LIMITERS:
        raise ConfigurationError(f'Unknown cache limiter:'
                                 f' {config.cache_limiter}')
    if not config.collection or not config.lock_collection:
        raise ConfigurationError('Collection names are required')
    if config.collection == config.lock_collection:
        raise ConfigurationError('Sessions and locks need their own'
                                 ' collections')
    return config


def from_mapping(mapping: Mapping[str, Any], **overrides: Any) \
        -> SessionConfig:
    """
    Build a :class:`SessionConfig` from upper-case configuration keys.

    Missing keys take their defaults. Keyword arguments win over
    ``mapping``.

    Parameters
    ----------
    mapping : Mapping
        For example ``app.config`` or ``os.environ``.
    overrides
        Field values for :class:`SessionConfig`.

    Returns
    -------
    :class:`SessionConfig`

    """
    def get(key: str, default: Any) -> Any:
        value = mapping.get(key)
        return default if value is None else value

    try:
        lock_lease = _optional(get('DOCSESSION_LOCK_LEASE', None))
        config = SessionConfig(
            collection=str(get('DOCSESSION_COLLECTION', DEFAULTS.collection)),
            lock_collection=str(get('DOCSESSION_LOCK_COLLECTION',
                                    DEFAULTS.lock_collection)),
            timeout=int(get('DOCSESSION_TIMEOUT', DEFAULTS.timeout)),
            lock_timeout=float(get('DOCSESSION_LOCK_TIMEOUT',
                                   DEFAULTS.lock_timeout)),
            lock_sleep=int(get('DOCSESSION_LOCK_SLEEP', DEFAULTS.lock_sleep)),
            clean_on_close=_bool(get('DOCSESSION_CLEAN_ON_CLOSE',
                                     DEFAULTS.clean_on_close)),
            machine_id=_optional(get('DOCSESSION_MACHINE_ID', None)),
            durability=Durability(
                w=int(get('DOCSESSION_WRITE_CONCERN', DEFAULTS.durability.w)),
                journal=_bool(get('DOCSESSION_WRITE_JOURNAL',
                                  DEFAULTS.durability.journal))
            ),
            release_on_rotation=_bool(get('DOCSESSION_RELEASE_ON_ROTATION',
                                          DEFAULTS.release_on_rotation)),
            lock_lease=float(lock_lease) if lock_lease else None,
            name=str(get('SESSION_COOKIE_NAME', DEFAULTS.name)),
            cookie_path=str(get('SESSION_COOKIE_PATH', DEFAULTS.cookie_path)),
            cookie_domain=_optional(get('SESSION_COOKIE_DOMAIN', None)),
            cookie_secure=_bool(get('SESSION_COOKIE_SECURE',
                                    DEFAULTS.cookie_secure)),
            cookie_httponly=_bool(get('SESSION_COOKIE_HTTPONLY',
                                      DEFAULTS.cookie_httponly)),
            cache_limiter=str(get('DOCSESSION_CACHE_LIMITER',
                                  DEFAULTS.cache_limiter)),
            cache_expiry=int(get('DOCSESSION_CACHE_EXPIRY',
                                 DEFAULTS.cache_expiry)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'Invalid configuration: {e}') from e
    return validate(config._replace(**overrides))


def init_app(app: Any) -> None:
    """Set default configuration parameters for an application instance."""
    config = app.config
    config.setdefault('DOCSESSION_COLLECTION', DEFAULTS.collection)
    config.setdefault('DOCSESSION_LOCK_COLLECTION', DEFAULTS.lock_collection)
    config.setdefault('DOCSESSION_TIMEOUT', str(DEFAULTS.timeout))
    config.setdefault('DOCSESSION_LOCK_TIMEOUT', str(DEFAULTS.lock_timeout))
    config.setdefault('DOCSESSION_LOCK_SLEEP', str(DEFAULTS.lock_sleep))
    config.setdefault('DOCSESSION_CLEAN_ON_CLOSE', '0')
    config.setdefault('DOCSESSION_WRITE_CONCERN', str(DEFAULTS.durability.w))
    config.setdefault('DOCSESSION_WRITE_JOURNAL', '0')
    config.setdefault('DOCSESSION_RELEASE_ON_ROTATION', '1')
    config.setdefault('DOCSESSION_CACHE_LIMITER', DEFAULTS.cache_limiter)
    config.setdefault('DOCSESSION_CACHE_EXPIRY', str(DEFAULTS.cache_expiry))
