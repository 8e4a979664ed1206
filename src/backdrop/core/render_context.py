"""
Rendering context: the torch device that compositing and blurring run on.

A RenderContext is NOT reentrant. Every submission goes through `session()`,
which serializes callers on the instance lock. Concurrent jobs either share one
context (and queue on the lock) or construct their own.
"""

import contextlib
import logging
import threading

import numpy as np
import torch

logger = logging.getLogger(__name__)


def get_device():
    """Gets the best available PyTorch device (CUDA, MPS, or CPU)."""
    if torch.cuda.is_available():
        logger.info("CUDA is available, using CUDA.")
        return torch.device('cuda')
    if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
        logger.info("MPS is available, using MPS.")
        return torch.device('mps')
    logger.info("No GPU (CUDA/MPS) available, falling back to CPU.")
    return torch.device('cpu')


class RenderContext:
    """Owns a torch device and serializes work submitted to it."""

    def __init__(self, device=None):
        self.device = torch.device(device) if device is not None else get_device()
        self._lock = threading.Lock()
        self._closed = False

    @contextlib.contextmanager
    def session(self):
        if self._closed:
            raise RuntimeError("RenderContext has been closed")
        with self._lock:
            with torch.no_grad():
                yield self

    def upload(self, image: np.ndarray) -> torch.Tensor:
        """HxWxC (or HxW) uint8 array -> float tensor in [0, 1] on the device."""
        tensor = torch.from_numpy(np.ascontiguousarray(image)).to(self.device, non_blocking=True)
        tensor = tensor.float().div_(255.0)
        if tensor.ndim == 2:
            tensor = tensor.unsqueeze_(-1)
        return tensor

    def download(self, tensor: torch.Tensor, out: np.ndarray = None) -> np.ndarray:
        """Float tensor in [0, 1] -> uint8 array, written into `out` when given."""
        result = tensor.clamp(0.0, 1.0).mul(255.0).round_().to(torch.uint8).cpu().numpy()
        if out is None:
            return result
        np.copyto(out, result.reshape(out.shape))
        return out

    def close(self):
        """Release cached device memory. The context is unusable afterwards."""
        with self._lock:
            self._closed = True
            if self.device.type == 'cuda':
                torch.cuda.empty_cache()
        logger.debug(f"RenderContext on {self.device} closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
