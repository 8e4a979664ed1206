"""
Output container writer with one video leg and an optional audio leg.

The video leg encodes on its own thread, fed through a bounded queue; callers
wait for `wait_until_ready()` before producing the next frame. The audio leg
copies compressed packets without re-encoding. The container is finalized only
after both legs have been marked finished.
"""

import logging
import os
import queue
import threading
from fractions import Fraction
from typing import Optional

import av
from av.error import FFmpegError

from backdrop.errors import FinalizeError, SourceReadError, WriterInitError
from backdrop.models import CompositionResult

logger = logging.getLogger(__name__)

_STOP = object()


class VideoWriterLeg:
    """Encodes composited frames at their original presentation timestamps.

    The encoder opens on the first frame, so a failure there is reported as
    WriterInitError. Later encoder failures leave an output that can no longer
    be finished and are reported as FinalizeError.
    """

    def __init__(self, muxer, stream, queue_size: int = 2):
        self.muxer = muxer
        self.stream = stream
        self.queue_size = queue_size
        self.frames_written = 0
        self.finished = False
        self.error = None
        self._last_pts = None
        self._pending = 0
        self._cond = threading.Condition()
        self._queue = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="backdrop-video-writer", daemon=True)
        self._thread.start()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the leg can take another frame. False on timeout."""
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._pending < self.queue_size or self.error is not None, timeout=timeout)
        self._raise_error()
        return ready

    def append(self, result: CompositionResult):
        """Queue a frame for encoding.

        Ownership of `result.buffer` passes to the leg, which returns it to its
        pool once the frame is encoded.

        Raises:
            SourceReadError: The timestamp goes backwards.
        """
        if self.finished:
            raise RuntimeError("Video leg already marked as finished")
        self._raise_error()
        pts = result.frame.pts
        if self._last_pts is not None and pts < self._last_pts:
            if result.buffer is not None:
                result.buffer.release()
            raise SourceReadError(f"Presentation timestamp went backwards ({pts} < {self._last_pts})")
        self._last_pts = pts
        with self._cond:
            self._pending += 1
        self._queue.put(result)

    def mark_as_finished(self):
        """Drain the queue, flush the encoder and stop the writer thread."""
        if self.finished:
            return
        self.finished = True
        self._queue.put(_STOP)
        self._thread.join()
        if self.error is None:
            try:
                self.muxer._encode(self.stream, None)
            except FFmpegError as e:
                self.error = FinalizeError(f"Flushing video encoder failed: {e}")
                self.error.__cause__ = e
        self._raise_error()

    def _raise_error(self):
        if self.error is not None:
            raise self.error

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                if self.error is None:
                    frame = av.VideoFrame.from_ndarray(item.frame.data, format='bgr24')
                    frame.pts = item.frame.pts
                    frame.time_base = item.frame.time_base
                    self.muxer._encode(self.stream, frame)
                    self.frames_written += 1
            except (FFmpegError, ValueError) as e:
                logger.error(f"Encoding frame pts={item.frame.pts} failed: {e}")
                if self.frames_written == 0:
                    self.error = WriterInitError(f"Video encoder could not start: {e}")
                else:
                    self.error = FinalizeError(f"Video encoder failed after {self.frames_written} frames: {e}")
                self.error.__cause__ = e
            finally:
                if item.buffer is not None:
                    item.buffer.release()
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()


class AudioWriterLeg:
    """Copies compressed audio packets into the output, byte for byte."""

    def __init__(self, muxer, stream):
        self.muxer = muxer
        self.stream = stream
        self.packets_written = 0
        self.finished = False

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return not self.finished

    def append(self, packet: av.Packet):
        if self.finished:
            raise RuntimeError("Audio leg already marked as finished")
        packet.stream = self.stream
        with self.muxer.lock:
            self.muxer.container.mux(packet)
        self.packets_written += 1

    def mark_as_finished(self):
        self.finished = True


class StreamMuxer:
    """Writes one video track and an optional passthrough audio track.

    Args:
        path: Output container path.
        width: Frame width.
        height: Frame height.
        frame_rate: Nominal frame rate of the video track.
        time_base: Time base of the incoming frame timestamps.
        audio_template: Input audio stream whose encoding parameters are copied.
        codec: Video encoder name.
        pix_fmt: Encoder pixel format.
        crf: Constant rate factor, for encoders that honour it.
        queue_size: Frames the video leg may hold before it stops being ready.
    """

    def __init__(self, path, width, height, frame_rate, time_base=None, audio_template=None,
                 codec='h264', pix_fmt='yuv420p', crf=23, queue_size=2):
        self.path = path
        self.lock = threading.Lock()
        self.finalized = False
        try:
            self.container = av.open(path, mode='w')
        except (FFmpegError, OSError) as e:
            raise WriterInitError(f"Cannot create output container {path}: {e}") from e

        try:
            rate = Fraction(frame_rate).limit_denominator(1001)
            stream = self.container.add_stream(codec, rate=rate)
            stream.width = width
            stream.height = height
            stream.pix_fmt = pix_fmt
            if codec in ('h264', 'libx264', 'hevc', 'libx265'):
                stream.options = {'crf': str(crf)}
            if time_base is not None:
                stream.codec_context.time_base = time_base
            self.video = VideoWriterLeg(self, stream, queue_size=queue_size)

            self.audio = None
            if audio_template is not None:
                audio_stream = self.container.add_stream_from_template(audio_template)
                self.audio = AudioWriterLeg(self, audio_stream)
        except (FFmpegError, ValueError, TypeError) as e:
            self.container.close()
            self._remove_output()
            raise WriterInitError(f"Cannot initialize output tracks for {path}: {e}") from e
        logger.info(f"Muxer opened {path} ({codec} {width}x{height}@{float(rate):.2f}, "
                     f"audio={'passthrough' if self.audio else 'none'})")

    def _encode(self, stream, frame):
        with self.lock:
            for packet in stream.encode(frame):
                self.container.mux(packet)

    @property
    def legs(self):
        return [leg for leg in (self.video, self.audio) if leg is not None]

    def finish_writing(self):
        """Finalize the container. Both legs must already be finished.

        Raises:
            FinalizeError: Writing the trailer or closing the file failed.
        """
        if self.finalized:
            return self.path
        unfinished = [type(leg).__name__ for leg in self.legs if not leg.finished]
        if unfinished:
            raise RuntimeError(f"Cannot finalize while legs are still writing: {unfinished}")
        try:
            with self.lock:
                self.container.close()
        except (FFmpegError, OSError) as e:
            self._remove_output()
            raise FinalizeError(f"Finalizing {self.path} failed: {e}") from e
        self.finalized = True
        logger.info(f"Finalized {self.path} ({self.video.frames_written} video frames)")
        return self.path

    def abort(self):
        """Stop both legs, close the container and delete the partial file."""
        for leg in self.legs:
            if not leg.finished:
                try:
                    leg.mark_as_finished()
                except Exception as e:
                    logger.debug(f"Ignoring error while aborting {type(leg).__name__}: {e}")
        try:
            with self.lock:
                self.container.close()
        except (FFmpegError, OSError) as e:
            logger.debug(f"Ignoring close error during abort: {e}")
        self._remove_output()

    def _remove_output(self):
        if os.path.exists(self.path):
            os.remove(self.path)
