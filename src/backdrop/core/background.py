"""
Background preparation: resize to the frame size and optionally blur.

The prepared background lives on the render context's device and is built
once per job, never per frame.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as F

from backdrop.core.render_context import RenderContext
from backdrop.models import BackgroundSpec

logger = logging.getLogger(__name__)


def gaussian_kernel(sigma: float, device=None) -> torch.Tensor:
    """Normalized 1-D Gaussian kernel covering +/- 3 sigma."""
    half = max(1, int(math.ceil(3.0 * sigma)))
    x = torch.arange(-half, half + 1, dtype=torch.float32, device=device)
    kernel = torch.exp(-(x * x) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def clamped_gaussian_blur(image: torch.Tensor, radius: float) -> torch.Tensor:
    """Blur an HxWxC tensor with edge clamping.

    The image is first extended by replicating its border pixels, then blurred
    with a separable Gaussian (sigma == radius), then cropped back to the
    original extent. Without the clamp the border darkens toward zero.
    """
    if radius <= 0:
        return image
    height, width, channels = image.shape
    kernel = gaussian_kernel(radius, device=image.device)
    half = kernel.numel() // 2

    x = image.permute(2, 0, 1).unsqueeze(0)  # HWC -> NCHW
    clamped = F.pad(x, (half, half, half, half), mode='replicate')

    horizontal = kernel.view(1, 1, 1, -1).repeat(channels, 1, 1, 1)
    vertical = kernel.view(1, 1, -1, 1).repeat(channels, 1, 1, 1)
    blurred = F.conv2d(clamped, horizontal, padding=(0, half), groups=channels)
    blurred = F.conv2d(blurred, vertical, padding=(half, 0), groups=channels)

    cropped = blurred[:, :, half:half + height, half:half + width]
    return cropped.squeeze(0).permute(1, 2, 0).contiguous()


@dataclass
class PreparedBackground:
    tensor: torch.Tensor  # HxWx3, float in [0, 1], on the context device
    width: int
    height: int
    blurred: bool
    fingerprint: Optional[str] = None


class BackgroundPreprocessor:
    """Builds the per-job background image.

    Args:
        context: Render context the prepared tensor is uploaded to.
        blur_radius: Gaussian radius used for blurred backgrounds.
    """

    def __init__(self, context: RenderContext, blur_radius: float = 12.0):
        self.context = context
        self.blur_radius = float(blur_radius)

    def prepare(self, background: BackgroundSpec, width: int, height: int) -> PreparedBackground:
        return self.prepare_image(background.image, width, height,
                                  blur=background.blur, fingerprint=background.fingerprint)

    def prepare_image(self, image: np.ndarray, width: int, height: int,
                      blur: bool = False, fingerprint: Optional[str] = None) -> PreparedBackground:
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid target size {width}x{height}")
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        elif image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)

        if image.shape[1] != width or image.shape[0] != height:
            interpolation = cv2.INTER_AREA if image.shape[1] > width else cv2.INTER_LINEAR
            image = cv2.resize(image, (width, height), interpolation=interpolation)

        with self.context.session():
            tensor = self.context.upload(image)
            if blur:
                tensor = clamped_gaussian_blur(tensor, self.blur_radius)
        logger.debug(f"Prepared background {width}x{height} (blur={blur}, radius={self.blur_radius})")
        return PreparedBackground(tensor=tensor, width=width, height=height,
                                  blurred=bool(blur), fingerprint=fingerprint)

    def to_ndarray(self, prepared: PreparedBackground) -> np.ndarray:
        with self.context.session():
            return self.context.download(prepared.tensor)
