from stackwright.db.models import Base, StateLockRow, StateSnapshotRow
from stackwright.db.session import create_tables, init_engine, session_factory

__all__ = [
    "Base",
    "StateLockRow",
    "StateSnapshotRow",
    "create_tables",
    "init_engine",
    "session_factory",
]
