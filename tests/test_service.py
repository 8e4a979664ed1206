import os
import tempfile
import threading
import unittest

import numpy as np

from backdrop.core.render_context import RenderContext
from backdrop.core.segmentation import SegmentationEngine
from backdrop.models import BackgroundSpec, JobState
from backdrop.service import BackgroundReplaceService
from backdrop.utils.config_manager import BackdropConfig

from helpers import RectDetector, make_frame, rect_mask, write_clip


class TestBackgroundReplaceService(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.clips = tempfile.TemporaryDirectory()
        cls.clip = write_clip(os.path.join(cls.clips.name, "short.mov"), frames=15, audio=False)

    @classmethod
    def tearDownClass(cls):
        cls.clips.cleanup()

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.video_detector = RectDetector()
        self.service = BackgroundReplaceService(
            BackdropConfig(video_codec="mpeg4", work_dir=self.tmp.name, workers=1),
            video_segmentation=SegmentationEngine(self.video_detector, "balanced"),
            image_segmentation=SegmentationEngine(RectDetector(), "accurate"),
            context=RenderContext("cpu"),
        )
        self.background = BackgroundSpec(np.full((48, 64, 3), 90, dtype=np.uint8))

    def tearDown(self):
        self.service.close()
        self.tmp.cleanup()

    def run_video(self, **kwargs):
        done = threading.Event()
        handle = self.service.replace_video(self.clip, on_complete=lambda f: done.set(), **kwargs)
        artifact = handle.result(timeout=120)
        self.assertTrue(done.wait(timeout=10))
        return handle, artifact

    def test_repeat_request_is_served_from_cache(self):
        _, first = self.run_video(background=self.background)
        calls = self.video_detector.calls
        handle, second = self.run_video(background=self.background)
        self.assertTrue(handle.future.done())
        self.assertIs(handle.state, JobState.FINISHED)
        self.assertEqual(second, first)
        self.assertEqual(self.video_detector.calls, calls)

    def test_blur_flag_is_part_of_the_cache_key(self):
        _, sharp = self.run_video(background=self.background)
        _, blurred = self.run_video(background=self.background.with_blur(True))
        self.assertNotEqual(sharp.path, blurred.path)
        self.assertNotEqual(sharp.fingerprint, blurred.fingerprint)

    def test_default_background_is_cached_per_blur_flag(self):
        _, plain = self.run_video()
        _, again = self.run_video()
        _, blurred = self.run_video(blur=True)
        self.assertEqual(plain.path, again.path)
        self.assertNotEqual(plain.path, blurred.path)

    def test_deleted_output_is_reprocessed(self):
        _, first = self.run_video(background=self.background)
        os.remove(first.path)
        _, second = self.run_video(background=self.background)
        self.assertNotEqual(first.path, second.path)
        self.assertTrue(os.path.exists(second.path))

    def test_image_operations_run_off_thread(self):
        image = make_frame(2)
        person = rect_mask(48, 64) > 0.5
        replaced = self.service.replace_image(image, np.zeros((48, 64, 3), np.uint8)).result(timeout=30)
        np.testing.assert_array_equal(replaced[person], image[person])
        self.assertTrue((replaced[~person] == 0).all())
        np.testing.assert_array_equal(self.service.remove_background(image).result(timeout=30), image)
        blurred = self.service.apply_blur(image).result(timeout=30)
        np.testing.assert_array_equal(blurred[person], image[person])


if __name__ == "__main__":
    unittest.main()
