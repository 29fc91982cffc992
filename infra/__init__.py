"""Infrastructure modules for portfolio-signals"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .state_store import PositionStore  # noqa: F401
from .history_store import PriceHistoryStore  # noqa: F401
from .locks import DistributedLock, MemoryLockStore, SQLiteLockStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"HealthServer",
	"PositionStore",
	"PriceHistoryStore",
	"DistributedLock",
	"MemoryLockStore",
	"SQLiteLockStore",
]
