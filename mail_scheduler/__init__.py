"""Background scheduling and delivery-retry engine for a desktop mail client."""

from .callbacks import SchedulerCallbacks
from .core import SchedulerEngine
from .persistence import Persistence

__all__ = ["Persistence", "SchedulerCallbacks", "SchedulerEngine"]
