"""Exceptions."""


class ConfigurationError(RuntimeError):
    """A configuration parameter is missing or invalid."""


class StoreError(RuntimeError):
    """The document store failed to carry out an operation."""


class DuplicateKey(StoreError):
    """A document with the same ``_id`` already exists."""


class DurabilityTimeout(StoreError):
    """
    The store timed out waiting for write acknowledgment.

    The write may or may not have been applied.
    """


class LockError(RuntimeError):
    """A session lock could not be acquired."""


class LockTimeout(LockError):
    """Gave up waiting for another process to release a session lock."""
