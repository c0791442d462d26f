"""Testing helpers."""

from contextlib import contextmanager
from typing import Any, Generator

from ..stores import sql


@contextmanager
def temporary_store(database_url: str = 'sqlite://', drop: bool = True,
                    **options: Any) -> Generator[sql.SQLStore, None, None]:
    """Provide an sqlite document store for testing purposes."""
    store = sql.connect(database_url, **options)
    try:
        yield store
    finally:
        if drop:
            store.drop_all()
        store.engine.dispose()
