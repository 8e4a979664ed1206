import os
import tempfile
import unittest

from backdrop.cache import ProcessedOutputCache
from backdrop.models import OutputArtifact


class TestProcessedOutputCache(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def artifact(self, name):
        path = os.path.join(self.tmp.name, name)
        with open(path, "wb") as f:
            f.write(b"x")
        return OutputArtifact(path=path, fingerprint=name, frame_count=1, duration=0.1, has_audio=False)

    def test_least_recently_used_entry_is_evicted(self):
        cache = ProcessedOutputCache(max_entries=2)
        cache.put("a", self.artifact("a"))
        cache.put("b", self.artifact("b"))
        self.assertIsNotNone(cache.get("a"))
        cache.put("c", self.artifact("c"))
        self.assertEqual(len(cache), 2)
        self.assertIsNone(cache.get("b"))
        self.assertIn("a", cache)
        self.assertIn("c", cache)

    def test_eviction_leaves_files_alone(self):
        cache = ProcessedOutputCache(max_entries=1)
        first = self.artifact("first")
        cache.put("first", first)
        cache.put("second", self.artifact("second"))
        self.assertTrue(os.path.exists(first.path))

    def test_vanished_outputs_are_dropped(self):
        cache = ProcessedOutputCache()
        artifact = self.artifact("gone")
        cache.put("gone", artifact)
        os.remove(artifact.path)
        self.assertIsNone(cache.get("gone"))
        self.assertEqual(len(cache), 0)

    def test_key_combines_source_and_fingerprint(self):
        self.assertNotEqual(ProcessedOutputCache.key("a.mov", "x"), ProcessedOutputCache.key("a.mov", "y"))
        self.assertNotEqual(ProcessedOutputCache.key("a.mov", "x"), ProcessedOutputCache.key("b.mov", "x"))

    def test_capacity_must_be_positive(self):
        with self.assertRaises(ValueError):
            ProcessedOutputCache(max_entries=0)


if __name__ == "__main__":
    unittest.main()
