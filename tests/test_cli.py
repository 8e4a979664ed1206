import contextlib
import io
import os
import tempfile
import unittest

import cv2
import numpy as np

from backdrop.cli import build_parser, main
from backdrop.models import fingerprint


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.image_path = os.path.join(self.tmp.name, "beach.png")
        cv2.imwrite(self.image_path, np.full((8, 8, 3), 200, dtype=np.uint8))

    def tearDown(self):
        self.tmp.cleanup()

    def test_video_background_is_optional(self):
        args = build_parser().parse_args(["video", "in.mov", "out.mov", "--blur"])
        self.assertEqual((args.source, args.background, args.output), ("in.mov", None, "out.mov"))
        self.assertTrue(args.blur)
        args = build_parser().parse_args(["video", "in.mov", "bg.png", "out.mov"])
        self.assertEqual(args.background, "bg.png")
        self.assertFalse(args.blur)

    def test_command_is_required(self):
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args([])

    def test_fingerprint(self):
        with open(self.image_path, "rb") as f:
            expected = fingerprint(f.read(), True)
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            self.assertEqual(main(["fingerprint", self.image_path, "--blur"]), 0)
        self.assertEqual(out.getvalue().strip(), expected)
        self.assertTrue(expected.endswith("_blur_true"))


if __name__ == "__main__":
    unittest.main()
