"""
Single-image background replacement.

Same algorithm as the video path, run once and synchronously with the
accurate segmentation tier. The background is painted first, then the
foreground is painted on top through the mask.
"""

import logging
from typing import Optional, Union

import cv2
import numpy as np

from backdrop.core.background import BackgroundPreprocessor
from backdrop.core.compositor import Compositor
from backdrop.core.render_context import RenderContext
from backdrop.core.segmentation import SegmentationEngine
from backdrop.errors import ImageProcessingError, SegmentationUnavailable
from backdrop.models import BackgroundSpec, Frame

logger = logging.getLogger(__name__)


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2 or (image.ndim == 3 and image.shape[2] == 1):
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    raise ImageProcessingError(f"Unsupported image shape {image.shape}")


class ImageBackgroundReplacer:
    """Replaces, removes or blurs the background of still images.

    Args:
        segmentation: Engine configured for the accurate tier.
        context: Render context; a new one is created when omitted.
        blur_radius: Gaussian radius used for blurred backgrounds.
    """

    def __init__(self, segmentation: SegmentationEngine, context: Optional[RenderContext] = None,
                 blur_radius: float = 15.0):
        self.segmentation = segmentation
        self.context = context or RenderContext()
        self.preprocessor = BackgroundPreprocessor(self.context, blur_radius)
        self.compositor = Compositor(self.context)

    def replace_background(self, image: np.ndarray, background: Union[np.ndarray, BackgroundSpec],
                           blur: bool = False) -> np.ndarray:
        """Composite `image`'s foreground over `background`.

        Args:
            image: BGR foreground image. Grayscale and BGRA are converted.
            background: BGR image or BackgroundSpec. A spec's own blur flag wins.
            blur: Blur the background before compositing.

        Returns:
            np.ndarray: BGR image the size of `image`.

        Raises:
            ImageProcessingError: The input is unusable or no person mask was found.
        """
        if image is None or image.size == 0:
            raise ImageProcessingError("Foreground image is empty")
        if isinstance(background, BackgroundSpec):
            blur = background.blur
            background = background.image
        if background is None or background.size == 0:
            raise ImageProcessingError("Background image is empty")

        image = np.ascontiguousarray(_as_bgr(image))
        height, width = image.shape[:2]
        prepared = self.preprocessor.prepare_image(_as_bgr(background), width, height, blur=blur)
        frame = Frame(image, pts=0)
        try:
            mask = self.segmentation.require_mask(frame)
        except SegmentationUnavailable as e:
            raise ImageProcessingError("No foreground found in image") from e
        return self.compositor.compose(frame, mask, prepared).frame.data

    def remove_background(self, image: np.ndarray) -> np.ndarray:
        """Restore the original look: the image is its own background."""
        return self.replace_background(image, image, blur=False)

    def apply_blur(self, image: np.ndarray) -> np.ndarray:
        """Keep the person sharp and blur the image's own background."""
        return self.replace_background(image, image, blur=True)

    def remove_blur(self, image: np.ndarray, selected_background: Optional[np.ndarray] = None) -> np.ndarray:
        """Re-render without blur, over the previously selected background if any."""
        background = selected_background if selected_background is not None else image
        return self.replace_background(image, background, blur=False)
