"""Pose source interface shared by the visual, geolocation and marker sources."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional

from ..control.pose import Pose, PoseCallback
from ..errors import AlreadyRunningError
from .frame_source import FrameSource

logger = logging.getLogger(__name__)


async def resolve(value: Any) -> Any:
    """Await ``value`` when a collaborator returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class PoseSource:
    """Base interface for pose sources.

    Capability set: initialize / start / stop / dispose. Subclasses produce
    poses through ``_emit`` which drops anything reported after ``stop()``.
    """

    name: str = "source"
    needs_frames: bool = True

    def __init__(self, on_pose: PoseCallback):
        self.on_pose = on_pose
        self.debug = False
        self._initialized = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Allocate source resources. Raises InitializationError."""
        self._initialized = True

    async def start(self, frame_source: Optional[FrameSource] = None) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Halt production. Idempotent; cancels any pending loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def dispose(self) -> None:
        self.stop()
        self._initialized = False

    def set_debug(self, enabled: bool) -> None:
        self.debug = bool(enabled)

    def _check_not_running(self) -> None:
        if self._running:
            raise AlreadyRunningError(f"[{self.name}] already running")

    def _emit(self, pose: Optional[Pose]) -> None:
        if not self._running:
            return
        self.on_pose(pose)

    async def _read_frame(self, frame_source: FrameSource, offload: bool):
        """Pull the current frame, off the event loop when ``offload`` is set."""
        if not offload:
            return frame_source.read()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, frame_source.read)

    def _spawn(self, coro) -> None:
        self._task = asyncio.get_running_loop().create_task(coro)
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "[%s] frame loop ended unexpectedly", self.name.upper(), exc_info=exc
            )
            self._running = False
