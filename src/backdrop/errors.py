"""
Error types raised by the background replacement pipeline.

Stream-level and initialization errors are fatal to a job. Segmentation
problems are recovered per frame and never reach the caller.
"""


class BackdropError(Exception):
    """Base class for every error raised by backdrop."""


class SourceReadError(BackdropError):
    """Missing or unreadable video track, or a decode failure."""


class ExportError(BackdropError):
    """The orientation-normalization stage failed or was cancelled."""


class WriterInitError(BackdropError):
    """The output container or one of its tracks could not be initialized."""


class SegmentationUnavailable(BackdropError):
    """No mask was produced for a frame. The frame is passed through."""


class CompositeBufferError(BackdropError):
    """No output buffer could be obtained for a frame."""


class FinalizeError(BackdropError):
    """Finalizing the output container failed."""


class ImageProcessingError(BackdropError):
    """The single-image path could not produce a composited image."""


class JobCancelled(BackdropError):
    """The job was cancelled.

    Attributes:
        output_path: Path of the finalized, possibly truncated container, or
            None when cancellation happened before the writer was opened.
    """

    def __init__(self, message="Job cancelled", output_path=None):
        super().__init__(message)
        self.output_path = output_path
