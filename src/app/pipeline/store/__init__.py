"""Record store layer -- pluggable persistence behind the pipeline engines.

Provides the abstract RecordStore interface with concrete implementations:
- PostgresRecordStore: SQLAlchemy async store against the hosted database
- InMemoryRecordStore: Process-local store for development and tests
"""

from src.app.pipeline.store.adapter import RecordStore
from src.app.pipeline.store.memory import InMemoryRecordStore
from src.app.pipeline.store.postgres import PostgresRecordStore, translate_error

__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "translate_error",
]
