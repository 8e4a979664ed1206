"""
Shared fixtures: synthetic clips and fake person detectors.
"""

import math
from fractions import Fraction

import av
import numpy as np


def make_frame(index, width=64, height=48):
    """Deterministic BGR test pattern with a square that moves each frame."""
    ys, xs = np.mgrid[0:height, 0:width]
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[..., 0] = (xs * 255 // max(1, width - 1)).astype(np.uint8)
    image[..., 1] = (ys * 255 // max(1, height - 1)).astype(np.uint8)
    image[..., 2] = (index * 7) % 256
    x = (index * 2) % (width - 8)
    image[8:16, x:x + 8] = 255
    return image


def write_clip(path, frames=90, fps=30, width=64, height=48, audio=True, sample_rate=44100):
    """Write an mpeg4 (+ aac) clip and return its path."""
    container = av.open(path, mode="w")
    video = container.add_stream("mpeg4", rate=fps)
    video.width = width
    video.height = height
    video.pix_fmt = "yuv420p"
    audio_stream = container.add_stream("aac", rate=sample_rate, layout="mono") if audio else None

    for i in range(frames):
        frame = av.VideoFrame.from_ndarray(make_frame(i, width, height), format="bgr24")
        frame.pts = i
        frame.time_base = Fraction(1, fps)
        for packet in video.encode(frame):
            container.mux(packet)
    for packet in video.encode(None):
        container.mux(packet)

    if audio_stream is not None:
        chunk = 1024
        chunks = int(math.ceil(frames / fps * sample_rate / chunk))
        t = np.arange(chunk, dtype=np.float32) / sample_rate
        for k in range(chunks):
            samples = (0.2 * np.sin(2 * np.pi * 440.0 * (t + k * chunk / sample_rate))).astype(np.float32)
            frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="fltp", layout="mono")
            frame.sample_rate = sample_rate
            frame.pts = k * chunk
            frame.time_base = Fraction(1, sample_rate)
            for packet in audio_stream.encode(frame):
                container.mux(packet)
        for packet in audio_stream.encode(None):
            container.mux(packet)

    container.close()
    return path


def count_video_frames(path):
    with av.open(path) as container:
        return sum(1 for _ in container.decode(video=0))


def audio_duration(path):
    """Seconds of decoded audio in the first audio track, or None when there is none."""
    with av.open(path) as container:
        if not container.streams.audio:
            return None
        stream = container.streams.audio[0]
        samples = sum(frame.samples for frame in container.decode(stream))
        return samples / stream.codec_context.sample_rate


def rect_mask(height, width, box=(0.25, 0.25, 0.75, 0.75)):
    x0, y0, x1, y1 = box
    mask = np.zeros((height, width), dtype=np.float32)
    mask[int(y0 * height):int(y1 * height), int(x0 * width):int(x1 * width)] = 1.0
    return mask


class RectDetector:
    """Reports a person occupying a fixed rectangle of every image."""

    def __init__(self, box=(0.25, 0.25, 0.75, 0.75), on_detect=None):
        self.box = box
        self.on_detect = on_detect
        self.calls = 0

    def detect(self, image_rgb):
        self.calls += 1
        if self.on_detect is not None:
            self.on_detect(self.calls)
        return rect_mask(image_rgb.shape[0], image_rgb.shape[1], self.box)


class NullDetector:
    def __init__(self):
        self.calls = 0

    def detect(self, image_rgb):
        self.calls += 1
        return None


class FailingDetector:
    def detect(self, image_rgb):
        raise RuntimeError("model exploded")


class AlternatingDetector(RectDetector):
    """Finds the person on every other call, starting with the first."""

    def detect(self, image_rgb):
        mask = super().detect(image_rgb)
        return mask if self.calls % 2 == 1 else None
