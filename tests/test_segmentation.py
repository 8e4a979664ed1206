import unittest

import numpy as np

from backdrop.core.segmentation import QualityLevel, SegmentationEngine
from backdrop.errors import SegmentationUnavailable
from backdrop.models import Frame

from helpers import FailingDetector, NullDetector, RectDetector


class ShrunkDetector:
    def detect(self, image_rgb):
        return np.ones((image_rgb.shape[0] // 2, image_rgb.shape[1] // 2), dtype=np.float32)


class MultiChannelDetector:
    def detect(self, image_rgb):
        mask = np.zeros(image_rgb.shape[:2] + (2,), dtype=np.float32)
        mask[..., 1] = 1.0
        return mask


class TestSegmentationEngine(unittest.TestCase):

    def setUp(self):
        self.frame = Frame(np.zeros((48, 64, 3), dtype=np.uint8), pts=3)

    def test_mask_aligned_with_frame(self):
        mask = SegmentationEngine(RectDetector()).segment(self.frame)
        self.assertTrue(mask.matches(self.frame))
        self.assertEqual(mask.data[24, 32], 255)
        self.assertEqual(mask.data[0, 0], 0)

    def test_low_resolution_mask_is_scaled_up(self):
        mask = SegmentationEngine(ShrunkDetector()).segment(self.frame)
        self.assertEqual(mask.data.shape, (48, 64))
        self.assertTrue((mask.data == 255).all())

    def test_highest_weighted_channel_is_used(self):
        mask = SegmentationEngine(MultiChannelDetector()).segment(self.frame)
        self.assertTrue((mask.data == 255).all())

    def test_empty_result_is_not_an_error(self):
        engine = SegmentationEngine(NullDetector())
        self.assertIsNone(engine.segment(self.frame))
        with self.assertRaises(SegmentationUnavailable):
            engine.require_mask(self.frame)

    def test_detector_failure_is_contained(self):
        self.assertIsNone(SegmentationEngine(FailingDetector()).segment(self.frame))

    def test_accepts_raw_arrays(self):
        mask = SegmentationEngine(RectDetector()).segment(self.frame.data)
        self.assertEqual(mask.data.shape, (48, 64))

    def test_quality_level_parsing(self):
        self.assertIs(QualityLevel.parse("accurate"), QualityLevel.ACCURATE)
        self.assertIs(QualityLevel.parse(QualityLevel.BALANCED), QualityLevel.BALANCED)
        self.assertIs(QualityLevel.parse("ludicrous"), QualityLevel.BALANCED)
        self.assertIs(SegmentationEngine(NullDetector(), "accurate").quality, QualityLevel.ACCURATE)


if __name__ == "__main__":
    unittest.main()
