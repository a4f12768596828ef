"""
Persistence layer: SQLAlchemy models, session management and repositories.
"""

from .base import Base
from .models import (
    AnalysisRecord,
    CalculatorRecord,
    ComparablesRecord,
    PropertyRecord,
    RecentAnalysis,
    UserTab,
)
from .repository import (
    AnalysisRepository,
    CalculatorRepository,
    ComparablesRepository,
    LastTabError,
    PropertyRepository,
    TabRepository,
    parse_timestamp,
)
from .session import (
    create_all_tables,
    get_db,
    get_db_session,
    get_engine,
)

__all__ = [
    "Base",
    "AnalysisRecord",
    "CalculatorRecord",
    "ComparablesRecord",
    "PropertyRecord",
    "RecentAnalysis",
    "UserTab",
    "AnalysisRepository",
    "CalculatorRepository",
    "ComparablesRepository",
    "LastTabError",
    "PropertyRepository",
    "TabRepository",
    "parse_timestamp",
    "create_all_tables",
    "get_db",
    "get_db_session",
    "get_engine",
]
