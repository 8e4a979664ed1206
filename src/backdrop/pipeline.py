"""
Job orchestration for video background replacement.

A job runs in three phases:
  1. orientation normalization into an upright intermediate,
  2. two concurrent loops: video (decode -> segment -> composite -> encode)
     and audio (demux -> copy),
  3. finalization of the output once both loops have finished.

Results are delivered through a concurrent.futures.Future. The future resolves
to an OutputArtifact, or fails with SourceReadError, ExportError,
WriterInitError, CompositeBufferError, FinalizeError or JobCancelled.
"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Callable, Optional

from av.error import FFmpegError

from backdrop.core.background import BackgroundPreprocessor
from backdrop.core.compositor import Compositor, PixelBufferPool
from backdrop.core.render_context import RenderContext
from backdrop.core.segmentation import SegmentationEngine
from backdrop.errors import (BackdropError, ExportError, JobCancelled,
                             SegmentationUnavailable, WriterInitError)
from backdrop.media.demux import StreamDemuxer
from backdrop.media.mux import StreamMuxer
from backdrop.media.orientation import OrientationNormalizer, extract_first_frame
from backdrop.models import BackgroundSpec, JobState, OutputArtifact, ProcessingJob
from backdrop.utils.config_manager import BackdropConfig

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag with callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]):
        """Run `callback` on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


class JobHandle:
    """What `submit` hands back: the job, its future and its cancel switch."""

    def __init__(self, job: ProcessingJob, future, token: CancellationToken):
        self.job = job
        self.future = future
        self.token = token

    def cancel(self):
        self.token.cancel()

    def result(self, timeout=None) -> OutputArtifact:
        return self.future.result(timeout=timeout)

    @property
    def state(self) -> JobState:
        return self.job.state


class PipelineCoordinator:
    """Runs background replacement jobs on worker threads.

    The render context and segmentation engine are shared by every job the
    coordinator runs; both serialize access internally.

    Args:
        segmentation: Engine used for per-frame masks (balanced tier).
        config: Pipeline settings.
        context: Render context. A new one is created when omitted.
    """

    def __init__(self, segmentation: SegmentationEngine, config: Optional[BackdropConfig] = None,
                 context: Optional[RenderContext] = None):
        self.config = config or BackdropConfig()
        self.context = context or RenderContext()
        self.segmentation = segmentation
        self.normalizer = OrientationNormalizer(self.config.intermediate_codec, self.config.default_fps)
        self.preprocessor = BackgroundPreprocessor(self.context, self.config.video_blur_radius)
        self.compositor = Compositor(self.context)
        self._jobs = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="backdrop-job")
        self._legs = ThreadPoolExecutor(max_workers=2 * self.config.workers, thread_name_prefix="backdrop-leg")

    def submit(self, source_path, background: Optional[BackgroundSpec] = None, blur: bool = False,
               on_complete=None, completion_executor=None, cancel_token=None) -> JobHandle:
        """Queue a job and return immediately.

        Args:
            source_path: Source video.
            background: Replacement background. The source's first frame is
                used when omitted.
            blur: Blur flag used when `background` is omitted.
            on_complete: Called exactly once with the finished future.
            completion_executor: Executor `on_complete` is dispatched to. Runs
                on the finishing worker thread when omitted.
            cancel_token: Token to cancel the job with; one is created if omitted.
        """
        job = ProcessingJob(source_path=str(source_path), background=background,
                            blur=background.blur if background is not None else blur,
                            work_dir=self.config.work_dir)
        token = cancel_token or CancellationToken()
        future = self._jobs.submit(self.run, job, token)
        if on_complete is not None:
            if completion_executor is not None:
                future.add_done_callback(lambda f: completion_executor.submit(on_complete, f))
            else:
                future.add_done_callback(on_complete)
        return JobHandle(job, future, token)

    def run(self, job: ProcessingJob, token: Optional[CancellationToken] = None) -> OutputArtifact:
        """Run a job on the calling thread."""
        token = token or CancellationToken()
        job.prepare_paths(self.config.intermediate_suffix, self.config.container_suffix)
        try:
            artifact = self._run(job, token)
        except JobCancelled as e:
            job.error = e
            job.transition(JobState.CANCELLED)
            raise
        except ExportError as e:
            if token.cancelled:
                cancelled = JobCancelled("Job cancelled during orientation normalization")
                job.error = cancelled
                job.transition(JobState.CANCELLED)
                job.cleanup_output()
                raise cancelled from e
            self._fail(job, e)
            raise
        except Exception as e:
            self._fail(job, e)
            raise
        finally:
            job.cleanup_intermediate()
        job.transition(JobState.FINISHED)
        return artifact

    def _fail(self, job, error):
        logger.error(f"Job {job.job_id} failed: {error}", exc_info=error)
        job.error = error
        job.transition(JobState.FAILED)
        job.cleanup_output()

    def _run(self, job: ProcessingJob, token: CancellationToken) -> OutputArtifact:
        job.transition(JobState.READING)
        asset = self.normalizer.normalize(job.source_path, job.intermediate_path, cancel_token=token)
        if token.cancelled:
            raise JobCancelled("Job cancelled before compositing started")

        background = job.background
        if background is None:
            background = BackgroundSpec(extract_first_frame(job.intermediate_path), blur=job.blur)

        demuxer = StreamDemuxer(job.intermediate_path)
        try:
            return self._process(job, asset, background, demuxer, token)
        finally:
            demuxer.close()

    def _process(self, job, asset, background, demuxer, token):
        reader = demuxer.video
        width, height = reader.width, reader.height
        frame_rate = reader.frame_rate or asset.video.frame_rate or self.config.default_fps
        prepared = self.preprocessor.prepare(background, width, height)
        pool = PixelBufferPool(width, height, capacity=self.config.buffer_pool_size,
                               timeout=self.config.buffer_timeout)
        muxer = StreamMuxer(
            job.output_path, width, height, frame_rate,
            time_base=reader.stream.time_base,
            audio_template=demuxer.audio.stream if demuxer.audio is not None else None,
            codec=self.config.video_codec, pix_fmt=self.config.pix_fmt, crf=self.config.crf,
            queue_size=self.config.buffer_pool_size - 1,
        )
        token.add_callback(demuxer.cancel_reading)

        job.transition(JobState.COMPOSING)
        futures = [self._legs.submit(self._video_loop, job, reader, muxer.video, pool, prepared)]
        if demuxer.audio is not None:
            futures.append(self._legs.submit(self._audio_loop, demuxer.audio, muxer.audio))

        job.transition(JobState.JOINING)
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        if any(f.exception() is not None for f in done):
            # stop the surviving leg early so it reports finished
            demuxer.cancel_reading()
        wait(futures)
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            muxer.abort()
            raise errors[0]

        job.transition(JobState.WRITING)
        path = muxer.finish_writing()
        if token.cancelled:
            logger.info(f"Job {job.job_id} cancelled after {muxer.video.frames_written} frames; "
                        f"truncated output finalized at {path}")
            raise JobCancelled(output_path=path)
        return OutputArtifact(
            path=path,
            fingerprint=background.fingerprint,
            frame_count=muxer.video.frames_written,
            duration=asset.video.duration,
            has_audio=muxer.audio is not None,
        )

    def _video_loop(self, job, reader, leg, pool, prepared) -> int:
        frames = passthrough = 0
        try:
            while leg.wait_until_ready():
                frame = reader.next_frame()
                if frame is None:
                    break
                try:
                    mask = self.segmentation.require_mask(frame)
                except SegmentationUnavailable:
                    logger.debug(f"Job {job.job_id}: no mask for pts={frame.pts}, passing frame through")
                    mask = None
                    passthrough += 1
                buffer = pool.checkout()
                try:
                    result = self.compositor.compose(frame, mask, prepared, buffer)
                except BaseException:
                    buffer.release()
                    raise
                leg.append(result)
                frames += 1
        except BaseException:
            self._finish_quietly(leg)
            raise
        leg.mark_as_finished()
        logger.info(f"Job {job.job_id}: video leg finished ({frames} frames, {passthrough} passed through)")
        return frames

    def _audio_loop(self, reader, leg) -> int:
        packets = 0
        try:
            while leg.wait_until_ready():
                packet = reader.next_sample()
                if packet is None:
                    break
                leg.append(packet)
                packets += 1
        except FFmpegError as e:
            self._finish_quietly(leg)
            raise WriterInitError(f"Audio passthrough failed: {e}") from e
        except BaseException:
            self._finish_quietly(leg)
            raise
        leg.mark_as_finished()
        logger.debug(f"Audio leg finished ({packets} packets)")
        return packets

    @staticmethod
    def _finish_quietly(leg):
        try:
            leg.mark_as_finished()
        except BackdropError as e:
            logger.debug(f"Suppressed secondary leg error: {e}")

    def close(self):
        self._jobs.shutdown(wait=True)
        self._legs.shutdown(wait=True)
