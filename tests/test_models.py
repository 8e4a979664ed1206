import os
import tempfile
import unittest

import cv2
import numpy as np

from backdrop.errors import ImageProcessingError
from backdrop.models import (BackgroundSpec, Frame, JobState, ProcessingJob,
                             SegmentationMask, VideoTrackInfo, fingerprint)


class TestFingerprint(unittest.TestCase):

    def test_same_bytes_and_flag_give_same_identifier(self):
        self.assertEqual(fingerprint(b"abc", True), fingerprint(b"abc", True))

    def test_flag_changes_identifier(self):
        self.assertNotEqual(fingerprint(b"abc", True), fingerprint(b"abc", False))

    def test_bytes_change_identifier(self):
        self.assertNotEqual(fingerprint(b"abc", False), fingerprint(b"abd", False))

    def test_background_spec_uses_source_bytes(self):
        image = np.full((4, 4, 3), 90, dtype=np.uint8)
        ok, encoded = cv2.imencode(".png", image)
        self.assertTrue(ok)
        data = encoded.tobytes()
        spec = BackgroundSpec.from_bytes(data, blur=True)
        self.assertEqual(spec.fingerprint, fingerprint(data, True))
        self.assertEqual(spec.with_blur(False).fingerprint, fingerprint(data, False))
        np.testing.assert_array_equal(spec.image, image)

    def test_undecodable_bytes_are_rejected(self):
        with self.assertRaises(ImageProcessingError):
            BackgroundSpec.from_bytes(b"not an image")


class TestSegmentationMask(unittest.TestCase):

    def test_float_mask_scaled_to_uint8(self):
        mask = SegmentationMask(np.array([[0.0, 0.5, 1.0]], dtype=np.float32))
        self.assertEqual(mask.data.dtype, np.uint8)
        np.testing.assert_array_equal(mask.data, [[0, 128, 255]])

    def test_matches_frame_dimensions(self):
        frame = Frame(np.zeros((4, 6, 3), dtype=np.uint8), pts=0)
        self.assertTrue(SegmentationMask(np.zeros((4, 6), dtype=np.uint8)).matches(frame))
        self.assertFalse(SegmentationMask(np.zeros((6, 4), dtype=np.uint8)).matches(frame))


class TestTrackInfo(unittest.TestCase):

    def test_display_size_swaps_for_quarter_turns(self):
        self.assertEqual(VideoTrackInfo(width=1920, height=1080, rotation=90).display_size, (1080, 1920))
        self.assertEqual(VideoTrackInfo(width=1920, height=1080, rotation=180).display_size, (1920, 1080))


class TestProcessingJob(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_prepare_paths_removes_stale_artifacts(self):
        job = ProcessingJob(source_path="in.mov", work_dir=self.tmp.name)
        job.prepare_paths()
        with open(job.output_path, "wb") as f:
            f.write(b"stale")
        job.prepare_paths()
        self.assertFalse(os.path.exists(job.output_path))
        self.assertTrue(job.output_path.endswith(".mov"))
        self.assertTrue(job.intermediate_path.endswith(".mkv"))

    def test_terminal_state_is_sticky(self):
        job = ProcessingJob(source_path="in.mov")
        job.transition(JobState.READING)
        job.transition(JobState.FAILED)
        job.transition(JobState.FINISHED)
        self.assertEqual(job.state, JobState.FAILED)


if __name__ == "__main__":
    unittest.main()
