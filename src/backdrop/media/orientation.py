"""
Orientation normalization.

Rewrites a source clip into an intermediate container whose video frames are
stored upright and whose tracks start at time zero. Audio packets are copied
verbatim. Downstream stages can then work on frames in natural pixel order.
"""

import logging
import os
from fractions import Fraction

import av
import numpy as np
from av.error import FFmpegError

from backdrop.errors import ExportError, SourceReadError
from backdrop.media.demux import open_input, probe_asset, rotate_upright, upright_orientation
from backdrop.models import MediaAsset

logger = logging.getLogger(__name__)


def extract_first_frame(path) -> np.ndarray:
    """First frame of a clip as an upright BGR image.

    Raises:
        SourceReadError: No video track or nothing could be decoded.
    """
    container = open_input(path)
    try:
        if not container.streams.video:
            raise SourceReadError(f"No video track found in {path}")
        stream = container.streams.video[0]
        try:
            frame = next(container.decode(stream), None)
        except FFmpegError as e:
            raise SourceReadError(f"Cannot decode {path}: {e}") from e
        if frame is None:
            raise SourceReadError(f"{path} contains no decodable frames")
        rotation, mirrored = upright_orientation(stream, frame)
        return rotate_upright(frame.to_ndarray(format='bgr24'), rotation, mirrored)
    finally:
        container.close()


class OrientationNormalizer:
    """Produces the upright, zero-based intermediate for a job.

    Args:
        codec: Video encoder for the intermediate. ffv1 keeps it lossless.
        default_fps: Frame rate used when the source reports none.
    """

    def __init__(self, codec='ffv1', default_fps=30):
        self.codec = codec
        self.default_fps = default_fps

    def normalize(self, source_path, intermediate_path, cancel_token=None) -> MediaAsset:
        """Write the upright intermediate and describe it.

        Raises:
            SourceReadError: The source has no readable video track.
            ExportError: Writing the intermediate failed or was cancelled.
        """
        if os.path.exists(intermediate_path):
            os.remove(intermediate_path)

        info = probe_asset(source_path).video
        source = open_input(source_path)
        try:
            if not source.streams.video:
                raise SourceReadError(f"No video track found in {source_path}")
            video_in = source.streams.video[0]
            audio_in = source.streams.audio[0] if source.streams.audio else None
            try:
                self._export(source, video_in, audio_in, info, intermediate_path, cancel_token)
            except BaseException:
                if os.path.exists(intermediate_path):
                    os.remove(intermediate_path)
                raise
        finally:
            source.close()
        return probe_asset(intermediate_path)

    def _frame_rate(self, stream):
        rate = stream.average_rate or stream.guessed_rate
        if not rate or float(rate) <= 0:
            logger.warning(f"Source reports no frame rate. Using {self.default_fps} fps.")
            return Fraction(self.default_fps)
        return Fraction(rate)

    def _export(self, source, video_in, audio_in, info, intermediate_path, cancel_token):
        rate = self._frame_rate(video_in)
        time_base = video_in.time_base or Fraction(1, int(round(rate)))
        video_start = video_in.start_time or 0
        audio_start = (audio_in.start_time or 0) if audio_in is not None else 0

        try:
            output = av.open(intermediate_path, mode='w')
        except (FFmpegError, OSError) as e:
            raise ExportError(f"Cannot create intermediate {intermediate_path}: {e}") from e

        try:
            rotation, mirrored = info.rotation, info.mirrored
            video_out = self._add_video_stream(output, info, rate, time_base)
            audio_out = output.add_stream_from_template(audio_in) if audio_in is not None else None
            logger.info(f"Normalizing {source.name}: rotate {rotation} deg{' mirrored' if mirrored else ''}, "
                        f"{float(rate):.2f} fps, audio={'yes' if audio_in else 'no'}")
            frames = skipped = 0
            streams = [s for s in (video_in, audio_in) if s is not None]
            for packet in source.demux(*streams):
                if cancel_token is not None and cancel_token.cancelled:
                    raise ExportError("Orientation normalization cancelled")
                if packet.stream.type == 'audio':
                    if packet.dts is None or packet.size == 0:
                        continue
                    packet.pts = packet.pts - audio_start if packet.pts is not None else None
                    packet.dts = packet.dts - audio_start
                    # every track starts at zero, so leading priming packets go
                    if (packet.pts if packet.pts is not None else packet.dts) < 0:
                        skipped += 1
                        continue
                    packet.stream = audio_out
                    output.mux(packet)
                    continue
                for frame in packet.decode():
                    image = rotate_upright(frame.to_ndarray(format='bgr24'), rotation, mirrored)
                    upright = av.VideoFrame.from_ndarray(image, format='bgr24')
                    upright.pts = (frame.pts if frame.pts is not None else frames) - video_start
                    upright.time_base = time_base
                    for out_packet in video_out.encode(upright):
                        output.mux(out_packet)
                    frames += 1

            if skipped:
                logger.debug(f"Dropped {skipped} audio packets timed before the first frame")
            if frames == 0:
                raise SourceReadError(f"No decodable video frames in {source.name}")
            for out_packet in video_out.encode(None):
                output.mux(out_packet)
        except FFmpegError as e:
            raise ExportError(f"Orientation normalization failed: {e}") from e
        finally:
            output.close()
        logger.info(f"Wrote upright intermediate {intermediate_path} ({frames} frames)")

    def _add_video_stream(self, output, info, rate, time_base):
        width, height = info.display_size
        stream = output.add_stream(self.codec, rate=rate)
        stream.width = width
        stream.height = height
        stream.pix_fmt = 'bgr0' if self.codec == 'ffv1' else 'yuv420p'
        stream.codec_context.time_base = time_base
        return stream
