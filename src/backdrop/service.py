"""
Front door for callers: video jobs with output caching, plus image operations
run off the caller's thread.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from backdrop.cache import ProcessedOutputCache
from backdrop.core.render_context import RenderContext
from backdrop.core.segmentation import SegmentationEngine
from backdrop.image import ImageBackgroundReplacer
from backdrop.models import BackgroundSpec, JobState, ProcessingJob, fingerprint
from backdrop.pipeline import CancellationToken, JobHandle, PipelineCoordinator
from backdrop.utils.config_manager import BackdropConfig

logger = logging.getLogger(__name__)

# fingerprint payload meaning "the source video's own first frame"
SOURCE_FRAME_BACKGROUND = b"backdrop:source-first-frame"


class BackgroundReplaceService:
    """Owns the shared render context, both segmentation tiers and the cache.

    Args:
        config: Pipeline settings; loaded from configs/backdrop.yaml when omitted.
        video_segmentation: Balanced-tier engine for video frames.
        image_segmentation: Accurate-tier engine for still images.
        context: Shared render context.
    """

    def __init__(self, config: Optional[BackdropConfig] = None,
                 video_segmentation: Optional[SegmentationEngine] = None,
                 image_segmentation: Optional[SegmentationEngine] = None,
                 context: Optional[RenderContext] = None):
        self.config = config or BackdropConfig.from_manager()
        self.context = context or RenderContext()
        if video_segmentation is None:
            video_segmentation = SegmentationEngine.from_model(self.config.video_model_path,
                                                               self.config.video_quality)
        if image_segmentation is None:
            image_segmentation = SegmentationEngine.from_model(self.config.image_model_path,
                                                               self.config.image_quality)
        self.coordinator = PipelineCoordinator(video_segmentation, self.config, self.context)
        self.images = ImageBackgroundReplacer(image_segmentation, self.context,
                                              self.config.image_blur_radius)
        self.cache = ProcessedOutputCache(self.config.cache_max_entries)
        self._image_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="backdrop-image")

    def replace_video(self, source_path, background: Optional[BackgroundSpec] = None, blur: bool = False,
                      on_complete=None, completion_executor=None) -> JobHandle:
        """Start (or reuse) a video job.

        A previous output for the same source and background fingerprint is
        returned through an already-completed future.
        """
        if background is not None:
            key_fingerprint = background.fingerprint
        else:
            key_fingerprint = fingerprint(SOURCE_FRAME_BACKGROUND, blur)
        key = self.cache.key(source_path, key_fingerprint)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Reusing processed output {cached.path}")
            job = ProcessingJob(source_path=str(source_path), background=background, blur=blur,
                                state=JobState.FINISHED, output_path=cached.path)
            future = Future()
            future.set_result(cached)
            self._notify(future, on_complete, completion_executor)
            return JobHandle(job, future, CancellationToken())

        handle = self.coordinator.submit(source_path, background=background, blur=blur)

        def remember(f):
            if not f.cancelled() and f.exception() is None:
                self.cache.put(key, f.result())

        handle.future.add_done_callback(remember)
        self._notify(handle.future, on_complete, completion_executor)
        return handle

    @staticmethod
    def _notify(future, on_complete, completion_executor):
        if on_complete is None:
            return
        if completion_executor is not None:
            future.add_done_callback(lambda f: completion_executor.submit(on_complete, f))
        else:
            future.add_done_callback(on_complete)

    def replace_image(self, image, background, blur: bool = False) -> Future:
        return self._image_executor.submit(self.images.replace_background, image, background, blur)

    def remove_background(self, image) -> Future:
        return self._image_executor.submit(self.images.remove_background, image)

    def apply_blur(self, image) -> Future:
        return self._image_executor.submit(self.images.apply_blur, image)

    def remove_blur(self, image, selected_background=None) -> Future:
        return self._image_executor.submit(self.images.remove_blur, image, selected_background)

    def close(self):
        self._image_executor.shutdown(wait=True)
        self.coordinator.close()
        self.coordinator.segmentation.close()
        self.images.segmentation.close()
        self.context.close()
