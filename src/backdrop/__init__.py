"""
backdrop: person-segmentation background replacement for videos and images.
"""

from backdrop.errors import (BackdropError, CompositeBufferError, ExportError, FinalizeError,
                             ImageProcessingError, JobCancelled, SegmentationUnavailable,
                             SourceReadError, WriterInitError)
from backdrop.models import BackgroundSpec, OutputArtifact, fingerprint

__version__ = "0.1.0"

__all__ = [
    "BackdropError",
    "BackgroundSpec",
    "CompositeBufferError",
    "ExportError",
    "FinalizeError",
    "ImageProcessingError",
    "JobCancelled",
    "OutputArtifact",
    "SegmentationUnavailable",
    "SourceReadError",
    "WriterInitError",
    "fingerprint",
]
