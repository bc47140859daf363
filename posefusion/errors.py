"""Error taxonomy for pose sources and the fusion engine."""

from __future__ import annotations


class PoseFusionError(Exception):
    """Base class for all pose fusion errors."""


class InitializationError(PoseFusionError):
    """A source is missing a capability, collaborator or permission.

    Fatal to that source only; surfaced to the caller of initialize/update_config.
    """

    def __init__(self, source: str, message: str):
        super().__init__(f"[{source}] {message}")
        self.source = source


class AlreadyRunningError(PoseFusionError):
    """start() was called on a source that is already producing poses."""


class FrameProcessingError(PoseFusionError):
    """An estimator or detector call failed for a single frame."""


class FeedError(PoseFusionError):
    """A geolocation or marker feed reported a failure."""
