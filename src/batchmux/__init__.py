from .analytics import BatchAnalytics as BatchAnalytics
from .analytics import BatchReport as BatchReport
from .clock import Clock as Clock
from .clock import LoopClock as LoopClock
from .config import BatchManagerConfig as BatchManagerConfig
from .context import batch_get as batch_get
from .context import batch_post as batch_post
from .context import get_default_batch_manager as get_default_batch_manager
from .context import reset_default_batch_manager as reset_default_batch_manager
from .context import use_batch_manager as use_batch_manager
from .core import BatchManager as BatchManager
from .dedup import Deduplicator as Deduplicator
from .exceptions import BatchmuxError as BatchmuxError
from .exceptions import ClientQueueError as ClientQueueError
from .exceptions import ConfigurationError as ConfigurationError
from .exceptions import ServerError as ServerError
from .exceptions import TransportError as TransportError
from .models import BatchRequest as BatchRequest
from .models import BatchResponse as BatchResponse
from .models import Priority as Priority
from .scheduling import WindowScheduler as WindowScheduler

__all__ = [
    "BatchManager",
    "BatchManagerConfig",
    "WindowScheduler",
    "Deduplicator",
    "BatchAnalytics",
    "BatchReport",
    "BatchRequest",
    "BatchResponse",
    "Priority",
    "Clock",
    "LoopClock",
    "batch_get",
    "batch_post",
    "get_default_batch_manager",
    "reset_default_batch_manager",
    "use_batch_manager",
    "BatchmuxError",
    "ClientQueueError",
    "ConfigurationError",
    "ServerError",
    "TransportError",
]
