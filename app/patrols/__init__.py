# ============================================================================
# STREET PATROL LOG - Patrols
# ============================================================================
# Patrol records, the session controller that mutates them, date-range
# aggregation, report export and the realtime invalidate feed.
# ============================================================================

from .aggregator import AggregationResult, DateRange, aggregate, report_period
from .controller import PatrolSessionController
from .models import Patrol, PatrolRepository, PatrolStatus
from .notifier import PatrolChangeNotifier, get_notifier
from .routes import register_patrol_routes

__all__ = [
    "AggregationResult",
    "DateRange",
    "aggregate",
    "report_period",
    "PatrolSessionController",
    "Patrol",
    "PatrolRepository",
    "PatrolStatus",
    "PatrolChangeNotifier",
    "get_notifier",
    "register_patrol_routes",
]
