import os
import tempfile
import unittest

import yaml

from backdrop.utils.config_manager import BackdropConfig, ConfigManager


class TestConfigManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.manager = ConfigManager(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_gives_empty_config(self):
        self.assertEqual(self.manager.load_config("backdrop"), {})
        self.assertEqual(self.manager.get_config("backdrop", "blur", "video_radius", 7), 7)

    def test_save_and_get(self):
        self.assertTrue(self.manager.save_config("backdrop", {"blur": {"video_radius": 4}}))
        fresh = ConfigManager(self.tmp.name)
        self.assertEqual(fresh.get_config("backdrop", "blur", "video_radius"), 4)
        self.assertEqual(fresh.get_config("backdrop", "blur"), {"video_radius": 4})

    def test_typed_config_overrides_defaults(self):
        with open(os.path.join(self.tmp.name, "backdrop.yaml"), "w") as f:
            yaml.safe_dump({"output": {"video_codec": "mpeg4"}, "pipeline": {"buffer_pool_size": 6}}, f)
        config = BackdropConfig.from_manager(ConfigManager(self.tmp.name))
        self.assertEqual(config.video_codec, "mpeg4")
        self.assertEqual(config.buffer_pool_size, 6)
        self.assertEqual(config.video_blur_radius, 12.0)
        self.assertEqual(config.image_blur_radius, 15.0)
        self.assertEqual(config.default_fps, 30)
        self.assertTrue(config.work_dir)

    def test_shipped_config_loads(self):
        config = BackdropConfig.from_manager(ConfigManager())
        self.assertEqual(config.video_quality, "balanced")
        self.assertEqual(config.image_quality, "accurate")

    def test_pool_must_hold_two_buffers(self):
        with self.assertRaises(ValueError):
            BackdropConfig(buffer_pool_size=1)


if __name__ == "__main__":
    unittest.main()
