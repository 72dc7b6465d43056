from sqlalchemy import Enum
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class PeriodType(str, enum.Enum):
    """Aggregation granularity of a sync"""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SyncStatus(str, enum.Enum):
    """Sync run lifecycle status (completed and failed are terminal)"""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckType(str, enum.Enum):
    """Data quality check types"""
    ROW_COUNT = "row_count"
    SUM_VALIDATION = "sum_validation"
    NULL_CHECK = "null_check"
    DUPLICATE_CHECK = "duplicate_check"


class CheckStatus(str, enum.Enum):
    """Data quality check outcome"""
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


def enum_column_type(enum_cls, name: str) -> Enum:
    """Postgres enum type persisted by value ("started") rather than by member name."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )
