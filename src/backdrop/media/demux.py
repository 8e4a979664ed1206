"""
Pull-based readers for the video and audio tracks of a container.

Each reader owns its own PyAV container so the video and audio loops can pull
from the same file on different threads. Readers move through
reading -> completed | failed | cancelled.
"""

import enum
import logging
import math
import threading
from typing import Optional, Tuple

import av
import cv2
import numpy as np
from av.error import FFmpegError

from backdrop.errors import SourceReadError
from backdrop.models import AudioTrackInfo, Frame, MediaAsset, VideoTrackInfo

logger = logging.getLogger(__name__)


def open_input(path):
    try:
        return av.open(path, mode='r')
    except (FFmpegError, OSError) as e:
        raise SourceReadError(f"Cannot open {path}: {e}") from e


def clockwise_rotation(stream, frame=None) -> int:
    """Degrees (0/90/180/270) a track must be rotated clockwise to be upright."""
    tag = stream.metadata.get("rotate")
    if tag:
        degrees = float(tag)
    elif frame is not None:
        # display matrix rotation is counter-clockwise
        degrees = -float(getattr(frame, "rotation", 0) or 0)
    else:
        degrees = 0.0
    return int(round(degrees / 90.0)) * 90 % 360


def display_matrix(frame) -> Optional[np.ndarray]:
    """The frame's 3x3 display matrix as 9 int32 values, or None."""
    side_data = getattr(frame, "side_data", None)
    if not side_data:
        return None
    for entry in side_data:
        kind = getattr(entry.type, "name", str(entry.type))
        if kind.upper().endswith("DISPLAYMATRIX"):
            values = np.frombuffer(bytes(entry), dtype=np.int32)
            return values[:9] if values.size >= 9 else None
    return None


def matrix_orientation(matrix) -> Tuple[int, bool]:
    """(clockwise rotation, mirrored) that brings a display matrix upright.

    Follows ffmpeg's autorotate: quarter turns are taken from the matrix angle
    and the sign of the off-diagonal/diagonal terms tells a transpose or flip
    apart from a plain rotation.
    """
    m = [float(v) for v in matrix]
    scale0 = math.hypot(m[0], m[3])
    scale1 = math.hypot(m[1], m[4])
    if scale0 == 0 or scale1 == 0:
        return 0, False
    theta = math.degrees(math.atan2(m[1] / scale1, m[0] / scale0))
    quarter = int(round(theta / 90.0)) * 90 % 360
    if quarter == 90:
        return (90, True) if m[3] > 0 else (90, False)
    if quarter == 270:
        return (270, True) if m[3] < 0 else (270, False)
    if quarter == 180:
        hflip, vflip = m[0] < 0, m[4] < 0
        if hflip and vflip:
            return 180, False
        if vflip:
            return 180, True
        return 0, hflip
    if m[4] < 0:
        return 180, True
    return 0, False


def upright_orientation(stream, frame=None) -> Tuple[int, bool]:
    """(clockwise rotation, mirrored) for a track, from the display matrix when present."""
    if not stream.metadata.get("rotate") and frame is not None:
        matrix = display_matrix(frame)
        if matrix is not None:
            return matrix_orientation(matrix)
    return clockwise_rotation(stream, frame), False


def rotate_upright(image: np.ndarray, rotation: int, mirrored: bool = False) -> np.ndarray:
    if rotation == 90:
        image = cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    elif rotation == 180:
        image = cv2.rotate(image, cv2.ROTATE_180)
    elif rotation == 270:
        image = cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    if mirrored:
        image = cv2.flip(image, 1)
    return image


def _stream_duration(stream, container) -> float:
    if stream.duration and stream.time_base:
        return float(stream.duration * stream.time_base)
    if container.duration:
        return container.duration / av.time_base
    return 0.0


def probe_asset(path) -> MediaAsset:
    """Describe the first video track and first audio track of a file.

    Raises:
        SourceReadError: The file cannot be opened or has no video track.
    """
    container = open_input(path)
    try:
        if not container.streams.video:
            raise SourceReadError(f"No video track found in {path}")
        vs = container.streams.video[0]
        first = None
        try:
            first = next(container.decode(vs), None)
        except FFmpegError as e:
            raise SourceReadError(f"Cannot decode first frame of {path}: {e}") from e
        rate = vs.average_rate or vs.guessed_rate
        width = vs.codec_context.width or (first.width if first is not None else 0)
        height = vs.codec_context.height or (first.height if first is not None else 0)
        rotation, mirrored = upright_orientation(vs, first)
        video = VideoTrackInfo(
            width=width,
            height=height,
            rotation=rotation,
            mirrored=mirrored,
            frame_rate=float(rate) if rate else 0.0,
            duration=_stream_duration(vs, container),
            codec_name=vs.codec_context.name,
        )
        audio = None
        if container.streams.audio:
            a = container.streams.audio[0]
            audio = AudioTrackInfo(
                sample_rate=a.codec_context.sample_rate or 0,
                channels=len(a.codec_context.layout.channels),
                codec_name=a.codec_context.name,
                duration=_stream_duration(a, container),
            )
        return MediaAsset(path=str(path), video=video, audio=audio)
    finally:
        container.close()


class ReaderState(enum.Enum):
    READING = "reading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _TrackReader:
    kind = "track"

    def __init__(self, path):
        self.path = path
        self.container = open_input(path)
        self.state = ReaderState.READING
        self._cancelled = threading.Event()

    def cancel_reading(self):
        """Stop the reader. Safe to call from any thread."""
        self._cancelled.set()

    def _check_cancelled(self) -> bool:
        if self._cancelled.is_set() and self.state is ReaderState.READING:
            logger.info(f"{self.kind} reader cancelled: {self.path}")
            self.state = ReaderState.CANCELLED
        return self.state is not ReaderState.READING

    def _fail(self, error):
        self.state = ReaderState.FAILED
        raise SourceReadError(f"{self.kind} decode failed for {self.path}: {error}") from error

    def close(self):
        self.container.close()


class VideoTrackReader(_TrackReader):
    """Decodes BGR frames from the first video track."""
    kind = "video"

    def __init__(self, path):
        super().__init__(path)
        if not self.container.streams.video:
            self.container.close()
            raise SourceReadError(f"No video track found in {path}")
        self.stream = self.container.streams.video[0]
        self.stream.thread_type = "AUTO"
        self._frames = self.container.decode(self.stream)
        self.frames_read = 0

    @property
    def width(self):
        return self.stream.codec_context.width

    @property
    def height(self):
        return self.stream.codec_context.height

    @property
    def frame_rate(self):
        rate = self.stream.average_rate or self.stream.guessed_rate
        return float(rate) if rate else 0.0

    def next_frame(self) -> Optional[Frame]:
        """Next decoded frame, or None at end of stream / after cancellation.

        Raises:
            SourceReadError: Decoding failed.
        """
        if self._check_cancelled():
            return None
        try:
            av_frame = next(self._frames)
        except StopIteration:
            self.state = ReaderState.COMPLETED
            return None
        except FFmpegError as e:
            self._fail(e)
        if av_frame.pts is None:
            self._fail(ValueError(f"frame {self.frames_read} has no presentation timestamp"))
        self.frames_read += 1
        return Frame(av_frame.to_ndarray(format='bgr24'), av_frame.pts, av_frame.time_base)


class AudioTrackReader(_TrackReader):
    """Yields the compressed packets of the first audio track, untouched."""
    kind = "audio"

    def __init__(self, path):
        super().__init__(path)
        if not self.container.streams.audio:
            self.container.close()
            raise SourceReadError(f"No audio track found in {path}")
        self.stream = self.container.streams.audio[0]
        self._packets = self.container.demux(self.stream)
        self.packets_read = 0

    def next_sample(self) -> Optional[av.Packet]:
        if self._check_cancelled():
            return None
        try:
            while True:
                packet = next(self._packets)
                # demux() ends with an empty flush packet
                if packet.dts is not None and packet.size > 0:
                    break
        except StopIteration:
            self.state = ReaderState.COMPLETED
            return None
        except FFmpegError as e:
            self._fail(e)
        self.packets_read += 1
        return packet


class StreamDemuxer:
    """Video reader plus optional audio reader over one container."""

    def __init__(self, path):
        self.path = path
        self.video = VideoTrackReader(path)
        self.audio = None
        try:
            if self.video.container.streams.audio:
                self.audio = AudioTrackReader(path)
        except SourceReadError:
            self.video.close()
            raise

    @property
    def state(self) -> ReaderState:
        readers = [r for r in (self.video, self.audio) if r is not None]
        states = {r.state for r in readers}
        for state in (ReaderState.FAILED, ReaderState.CANCELLED, ReaderState.READING):
            if state in states:
                return state
        return ReaderState.COMPLETED

    def cancel_reading(self):
        self.video.cancel_reading()
        if self.audio is not None:
            self.audio.cancel_reading()

    def close(self):
        self.video.close()
        if self.audio is not None:
            self.audio.close()
