"""
Person segmentation.

SegmentationEngine wraps one detector instance and serializes calls into it;
detector objects keep internal state and must never run on two threads at once.
The engine reports a missing mask as None (or SegmentationUnavailable from
`require_mask`) and never lets a detector error escape.
"""

import enum
import logging
import os
import threading
from typing import Optional, Union

import cv2
import numpy as np

from backdrop.errors import SegmentationUnavailable
from backdrop.models import Frame, SegmentationMask

logger = logging.getLogger(__name__)


class QualityLevel(enum.Enum):
    """Accuracy/latency tier of a detector. Fixed per engine, not per call."""
    ACCURATE = "accurate"
    BALANCED = "balanced"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning(f"Unknown quality level {value!r}. Using 'balanced'.")
            return cls.BALANCED


class MediaPipeSelfieDetector:
    """Person detector backed by the MediaPipe Tasks ImageSegmenter.

    The square selfie model is the accurate tier; the landscape model
    (144x256 input) is the faster, balanced tier.

    Args:
        model_path: Path to a selfie segmenter .tflite model.
    """

    def __init__(self, model_path: str):
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Segmentation model not found: {model_path}")
        from mediapipe.tasks.python import BaseOptions, vision

        options = vision.ImageSegmenterOptions(
            base_options=BaseOptions(model_asset_path=model_path),
            running_mode=vision.RunningMode.IMAGE,
            output_category_mask=False,
            output_confidence_masks=True,
        )
        self.model_path = model_path
        self._segmenter = vision.ImageSegmenter.create_from_options(options)
        logger.info(f"MediaPipe segmenter loaded from {model_path}")

    def detect(self, image_rgb: np.ndarray) -> Optional[np.ndarray]:
        """Returns an HxW float32 person confidence map, or None."""
        import mediapipe as mp

        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(image_rgb))
        result = self._segmenter.segment(mp_image)
        if not result.confidence_masks:
            return None
        # Two-category models put "person" last; single-category models only have it.
        return np.array(result.confidence_masks[-1].numpy_view(), dtype=np.float32)

    def close(self):
        self._segmenter.close()


class SegmentationEngine:
    """Runs one detector per frame and returns an aligned SegmentationMask.

    Args:
        detector: Object with `detect(image_rgb) -> Optional[np.ndarray]`.
            Float maps are taken as 0..1, uint8 maps as 0..255.
        quality: The tier the detector was configured for.
    """

    def __init__(self, detector, quality: Union[QualityLevel, str] = QualityLevel.BALANCED):
        self.detector = detector
        self.quality = QualityLevel.parse(quality)
        self._lock = threading.Lock()

    @classmethod
    def from_model(cls, model_path: str, quality=QualityLevel.BALANCED):
        return cls(MediaPipeSelfieDetector(model_path), quality=quality)

    def segment(self, frame: Union[Frame, np.ndarray]) -> Optional[SegmentationMask]:
        """Segment a BGR frame. Returns None when no mask could be produced."""
        image = frame.data if isinstance(frame, Frame) else frame
        if image is None or image.size == 0:
            return None
        height, width = image.shape[:2]
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        with self._lock:
            try:
                raw = self.detector.detect(rgb)
            except Exception as e:
                logger.warning(f"Segmentation failed ({self.quality.value}): {e}")
                return None

        if raw is None or raw.size == 0:
            return None
        if raw.ndim == 3:
            raw = raw[..., int(np.argmax(raw.reshape(-1, raw.shape[-1]).sum(axis=0)))]
        if raw.shape[:2] != (height, width):
            raw = cv2.resize(raw, (width, height), interpolation=cv2.INTER_LINEAR)
        return SegmentationMask(raw)

    def require_mask(self, frame: Union[Frame, np.ndarray]) -> SegmentationMask:
        mask = self.segment(frame)
        if mask is None:
            raise SegmentationUnavailable("No segmentation mask for frame")
        return mask

    def close(self):
        close = getattr(self.detector, "close", None)
        if close is not None:
            with self._lock:
                close()
