"""
Data model for background replacement jobs.
"""

import enum
import hashlib
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Optional

import cv2
import numpy as np

from backdrop.errors import ImageProcessingError

logger = logging.getLogger(__name__)


def fingerprint(background_bytes: bytes, blur: bool) -> str:
    """Stable identifier for a (background, blur) combination.

    Args:
        background_bytes: Encoded (or raw) background image bytes.
        blur: Whether the background is blurred.

    Returns:
        str: Hex digest of the bytes followed by the blur flag.
    """
    digest = hashlib.sha256(bytes(background_bytes)).hexdigest()
    return f"{digest}_blur_{'true' if blur else 'false'}"


@dataclass(frozen=True)
class VideoTrackInfo:
    width: int
    height: int
    rotation: int = 0  # degrees clockwise needed to display upright
    mirrored: bool = False  # horizontal flip after the rotation
    frame_rate: float = 0.0
    duration: float = 0.0
    codec_name: str = ""

    @property
    def display_size(self):
        """(width, height) after the preferred rotation is applied."""
        if self.rotation % 180:
            return self.height, self.width
        return self.width, self.height


@dataclass(frozen=True)
class AudioTrackInfo:
    sample_rate: int
    channels: int
    codec_name: str = ""
    duration: float = 0.0


@dataclass(frozen=True)
class MediaAsset:
    """A media file plus the tracks it carries."""
    path: str
    video: Optional[VideoTrackInfo] = None
    audio: Optional[AudioTrackInfo] = None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None


@dataclass
class Frame:
    """A decoded BGR image stamped with its presentation timestamp."""
    data: np.ndarray
    pts: int
    time_base: Fraction = Fraction(1, 30)

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def time(self) -> float:
        return float(self.pts * self.time_base)


@dataclass
class SegmentationMask:
    """Single-channel foreground likelihood, 0 (background) to 255 (person)."""
    data: np.ndarray

    def __post_init__(self):
        if self.data.ndim == 3:
            self.data = self.data[..., 0]
        if self.data.dtype != np.uint8:
            self.data = np.clip(np.rint(self.data.astype(np.float32) * 255.0), 0, 255).astype(np.uint8)

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    def matches(self, frame: Frame) -> bool:
        return self.width == frame.width and self.height == frame.height


class BackgroundSpec:
    """A background image, the blur flag and the derived fingerprint."""

    def __init__(self, image: np.ndarray, blur: bool = False, source_bytes: Optional[bytes] = None):
        if image is None or image.size == 0:
            raise ImageProcessingError("Background image is empty")
        self.image = image
        self.blur = bool(blur)
        if source_bytes is None:
            ok, encoded = cv2.imencode(".png", image)
            if not ok:
                raise ImageProcessingError("Could not encode background image")
            source_bytes = encoded.tobytes()
        self.source_bytes = source_bytes
        self.fingerprint = fingerprint(source_bytes, self.blur)

    @classmethod
    def from_bytes(cls, data: bytes, blur: bool = False) -> "BackgroundSpec":
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            raise ImageProcessingError("Could not decode background image bytes")
        return cls(image, blur=blur, source_bytes=data)

    @classmethod
    def from_file(cls, path: str, blur: bool = False) -> "BackgroundSpec":
        with open(path, "rb") as f:
            return cls.from_bytes(f.read(), blur=blur)

    def with_blur(self, blur: bool) -> "BackgroundSpec":
        return BackgroundSpec(self.image, blur=blur, source_bytes=self.source_bytes)

    def __repr__(self):
        h, w = self.image.shape[:2]
        return f"BackgroundSpec({w}x{h}, blur={self.blur}, fingerprint={self.fingerprint[:12]}...)"


@dataclass
class CompositionResult:
    """A rendered frame; `composited` is False for passthrough frames.

    When `buffer` is set the frame data lives in a pooled PixelBuffer that
    goes back to its pool once the frame has been written.
    """
    frame: Frame
    composited: bool = True
    buffer: Optional[Any] = None

    @property
    def pts(self) -> int:
        return self.frame.pts


class JobState(enum.Enum):
    CREATED = "created"
    READING = "reading"
    COMPOSING = "composing"
    WRITING = "writing"
    JOINING = "joining"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.FINISHED, JobState.FAILED, JobState.CANCELLED)


@dataclass(frozen=True)
class OutputArtifact:
    """A finalized output container handed to the caller."""
    path: str
    fingerprint: str
    frame_count: int
    duration: float
    has_audio: bool


@dataclass
class ProcessingJob:
    """One (source video, background) request.

    The job owns `intermediate_path` and `output_path` until it finishes; on
    success the output is handed over to the caller as an OutputArtifact.
    """
    source_path: str
    background: Optional[BackgroundSpec] = None
    blur: bool = False
    work_dir: Optional[str] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.CREATED
    error: Optional[BaseException] = None
    intermediate_path: Optional[str] = None
    output_path: Optional[str] = None

    def prepare_paths(self, intermediate_suffix=".mkv", output_suffix=".mov"):
        """Assign the job's temp paths and remove stale artifacts left there."""
        work_dir = self.work_dir or tempfile.gettempdir()
        os.makedirs(work_dir, exist_ok=True)
        self.intermediate_path = os.path.join(work_dir, f"backdrop_{self.job_id}_upright{intermediate_suffix}")
        self.output_path = os.path.join(work_dir, f"backdrop_{self.job_id}_final{output_suffix}")
        for path in (self.intermediate_path, self.output_path):
            if os.path.exists(path):
                logger.info(f"Removing stale artifact {path}")
                os.remove(path)

    def transition(self, state: JobState):
        if self.state.is_terminal:
            logger.warning(f"Job {self.job_id}: ignoring transition {self.state.value} -> {state.value}")
            return
        logger.info(f"Job {self.job_id}: {self.state.value} -> {state.value}")
        self.state = state

    def cleanup_intermediate(self):
        if self.intermediate_path and os.path.exists(self.intermediate_path):
            os.remove(self.intermediate_path)

    def cleanup_output(self):
        if self.output_path and os.path.exists(self.output_path):
            os.remove(self.output_path)
