"""Infrastructure modules for the fleet rebalancer"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .events import EventDispatcher, EventType, SchedulerEvent  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .metrics import MetricsRecorder, RebalanceCounters  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"EventDispatcher",
	"EventType",
	"SchedulerEvent",
	"HealthServer",
	"MetricsRecorder",
	"RebalanceCounters",
]
