"""Infrastructure modules for spot-autopilot"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .control_server import ControlServer  # noqa: F401
from .events import EventBus  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"ControlServer",
	"EventBus",
	"MetricsRecorder",
	"StateStore",
]
