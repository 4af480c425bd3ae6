"""LRU cache for raw classifier predictions."""
import hashlib
import time
from collections import OrderedDict
from typing import Callable, Optional, Dict, Any, List, Tuple

from config import config

Predictions = List[Dict[str, Any]]


class PredictionCache:
    """LRU cache with TTL for classifier predictions.

    Keys combine the model name and the input text, so the sentiment and
    emotion models never share entries. Only provider predictions are
    cached; keyword fallback results are never stored here.
    """

    def __init__(
        self,
        max_size: int = None,
        ttl_seconds: int = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_size = max_size or config.CACHE_MAX_SIZE
        self.ttl_seconds = ttl_seconds or config.CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Predictions]]" = OrderedDict()
        self._counters = dict.fromkeys(("hits", "misses", "evictions", "expirations"), 0)

    @staticmethod
    def key_for(model: str, text: str) -> str:
        digest = hashlib.sha256()
        digest.update(model.encode())
        digest.update(b"\x00")
        digest.update(text.encode())
        return digest.hexdigest()

    def get(self, model: str, text: str) -> Optional[Predictions]:
        """Return a copy of the cached predictions, or None on miss/expiry."""
        key = self.key_for(model, text)
        entry = self._entries.get(key)

        if entry is not None and self._clock() - entry[0] > self.ttl_seconds:
            del self._entries[key]
            self._counters["expirations"] += 1
            entry = None

        if entry is None:
            self._counters["misses"] += 1
            return None

        self._entries.move_to_end(key)
        self._counters["hits"] += 1
        return [dict(prediction) for prediction in entry[1]]

    def set(self, model: str, text: str, predictions: Predictions) -> None:
        key = self.key_for(model, text)
        self._entries[key] = (self._clock(), [dict(prediction) for prediction in predictions])
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self._counters["evictions"] += 1

    def clear(self) -> None:
        self._entries.clear()
        for name in self._counters:
            self._counters[name] = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with hits, misses, evictions, expirations, size and hit rate
        """
        lookups = self._counters["hits"] + self._counters["misses"]
        return {
            **self._counters,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": round(self._counters["hits"] / lookups, 3) if lookups else 0
        }
