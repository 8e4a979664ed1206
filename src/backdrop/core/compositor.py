"""
Mask-driven compositing of a frame over a prepared background.

Output buffers come from a PixelBufferPool with a hard capacity. A buffer is
either free (owned by the pool) or checked out by exactly one in-flight frame
until the writer has consumed it.
"""

import logging
import threading
from typing import Optional

import numpy as np

from backdrop.core.background import PreparedBackground
from backdrop.core.render_context import RenderContext
from backdrop.errors import CompositeBufferError
from backdrop.models import CompositionResult, Frame, SegmentationMask

logger = logging.getLogger(__name__)


class PixelBuffer:
    """An HxWx3 uint8 array on loan from a PixelBufferPool."""

    def __init__(self, pool, index: int, data: np.ndarray):
        self.pool = pool
        self.index = index
        self.data = data
        self.checked_out = False

    def release(self):
        self.pool.release(self)


class PixelBufferPool:
    """Fixed-capacity pool of frame-sized output buffers.

    Args:
        width: Buffer width in pixels.
        height: Buffer height in pixels.
        capacity: Maximum number of buffers that can exist at once.
        timeout: Default seconds `checkout` waits for a free buffer.
    """

    def __init__(self, width: int, height: int, capacity: int = 4, timeout: float = 5.0):
        if capacity < 1:
            raise ValueError("Pool capacity must be at least 1")
        self.width = width
        self.height = height
        self.capacity = capacity
        self.timeout = timeout
        self._free = []
        self._allocated = 0
        self._cond = threading.Condition()

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._allocated - len(self._free)

    def checkout(self, timeout: Optional[float] = None) -> PixelBuffer:
        """Take a free buffer, allocating lazily up to capacity.

        Raises:
            CompositeBufferError: No buffer became free within the timeout.
        """
        timeout = self.timeout if timeout is None else timeout
        with self._cond:
            if not self._free and self._allocated >= self.capacity:
                self._cond.wait_for(lambda: bool(self._free), timeout=timeout)
            if self._free:
                buffer = self._free.pop()
            elif self._allocated < self.capacity:
                try:
                    data = np.empty((self.height, self.width, 3), dtype=np.uint8)
                except MemoryError as e:
                    raise CompositeBufferError(f"Could not allocate {self.width}x{self.height} buffer") from e
                buffer = PixelBuffer(self, self._allocated, data)
                self._allocated += 1
            else:
                raise CompositeBufferError(
                    f"Pixel buffer pool exhausted ({self.capacity} buffers in flight, waited {timeout}s)")
            buffer.checked_out = True
            return buffer

    def release(self, buffer: PixelBuffer):
        with self._cond:
            if buffer.pool is not self or not buffer.checked_out:
                raise ValueError(f"Buffer {buffer.index} is not checked out from this pool")
            buffer.checked_out = False
            self._free.append(buffer)
            self._cond.notify()


class Compositor:
    """Blends frames over a background using a soft segmentation mask.

    output = foreground * alpha + background * (1 - alpha), alpha = mask / 255.
    Frames without a usable mask are copied through unmodified.
    """

    def __init__(self, context: RenderContext):
        self.context = context

    def compose(self, frame: Frame, mask: Optional[SegmentationMask],
                background: PreparedBackground, buffer: Optional[PixelBuffer] = None) -> CompositionResult:
        if buffer is not None and buffer.data.shape != frame.data.shape:
            raise CompositeBufferError(
                f"Buffer shape {buffer.data.shape} does not match frame shape {frame.data.shape}")
        out = buffer.data if buffer is not None else np.empty_like(frame.data)

        if mask is None or not mask.matches(frame):
            if mask is not None:
                logger.warning(f"Mask {mask.width}x{mask.height} does not match frame "
                               f"{frame.width}x{frame.height}; passing frame through")
            np.copyto(out, frame.data)
            return CompositionResult(Frame(out, frame.pts, frame.time_base), composited=False, buffer=buffer)

        if background.width != frame.width or background.height != frame.height:
            raise ValueError(f"Background {background.width}x{background.height} does not match "
                             f"frame {frame.width}x{frame.height}")

        with self.context.session():
            fg = self.context.upload(frame.data)
            alpha = self.context.upload(mask.data)
            comp = fg * alpha + background.tensor * (1.0 - alpha)
            self.context.download(comp, out=out)
        return CompositionResult(Frame(out, frame.pts, frame.time_base), composited=True, buffer=buffer)
