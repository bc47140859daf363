"""Multi-source 6DoF pose fusion."""

from .config import TrackerConfig
from .control.engine import FusionEngine
from .control.pose import Pose
from .errors import (
    AlreadyRunningError,
    FeedError,
    FrameProcessingError,
    InitializationError,
    PoseFusionError,
)

__all__ = [
    "AlreadyRunningError",
    "FeedError",
    "FrameProcessingError",
    "FusionEngine",
    "InitializationError",
    "Pose",
    "PoseFusionError",
    "TrackerConfig",
]
