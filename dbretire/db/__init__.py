"""
Database Package
================

Exports key database components.
"""

from dbretire.db.models import (
    Base,
    MigrationRecordModel,
    AccessEventModel,
    AlertRecordModel,
)
from dbretire.db.connection import (
    create_engine_for,
    init_state_db,
    get_session_maker,
    close_state_db,
)
