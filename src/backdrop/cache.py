"""
Bounded cache of processed outputs keyed by (source, background fingerprint).
"""

import logging
import os
import threading
from collections import OrderedDict
from typing import Optional

from backdrop.models import OutputArtifact

logger = logging.getLogger(__name__)


class ProcessedOutputCache:
    """Least-recently-used map from cache key to OutputArtifact.

    Evicted artifacts are forgotten, not deleted; the files belong to the caller.
    Entries whose file has disappeared are dropped on lookup.
    """

    def __init__(self, max_entries: int = 16):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(source_path, fingerprint: str) -> str:
        return f"{os.path.abspath(str(source_path))}::{fingerprint}"

    def get(self, key: str) -> Optional[OutputArtifact]:
        with self._lock:
            artifact = self._entries.get(key)
            if artifact is None:
                return None
            if not os.path.exists(artifact.path):
                logger.info(f"Cached output vanished, dropping {artifact.path}")
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return artifact

    def put(self, key: str, artifact: OutputArtifact):
        with self._lock:
            self._entries[key] = artifact
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted_key, evicted = self._entries.popitem(last=False)
                logger.debug(f"Evicted {evicted_key} -> {evicted.path}")

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()
