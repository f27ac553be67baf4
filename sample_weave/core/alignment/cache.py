"""Pairwise result cache with insert-once-per-key semantics.

The cache is session-scoped state owned by whoever creates it (usually the
integration engine); there is no module-level cache. Each key has its own
lock, so workers aligning different pairs never wait on each other, while two
workers asking for the same key compute it once. A computation that raises
leaves no entry behind.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .config import ComparisonSpace
from .result import AlignmentKey, PairAlignment

logger = logging.getLogger(__name__)


class PairwiseResultCache:
    """Concurrent key -> PairAlignment store.

    Example
    -------
    >>> cache = PairwiseResultCache()
    >>> alignment = cache.get_or_compute(key, lambda: compute_alignment())
    >>> cache.n_computations
    1
    """

    def __init__(self):
        self._entries: Dict[AlignmentKey, PairAlignment] = {}
        self._key_locks: Dict[AlignmentKey, threading.Lock] = {}
        self._guard = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._computations = 0
        self._failures = 0

    def _lock_for(self, key: AlignmentKey) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _count(self, attr: str) -> None:
        with self._guard:
            setattr(self, attr, getattr(self, attr) + 1)

    def get(self, key: AlignmentKey) -> Optional[PairAlignment]:
        return self._entries.get(key)

    def get_or_compute(
        self,
        key: AlignmentKey,
        compute: Callable[[], PairAlignment],
    ) -> PairAlignment:
        """Return the cached alignment, computing it at most once per key.

        Exceptions raised by ``compute`` propagate and nothing is stored.
        """
        entry = self._entries.get(key)
        if entry is not None:
            self._count("_hits")
            return entry

        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None:
                self._count("_hits")
                return entry

            self._count("_misses")
            try:
                result = compute()
            except Exception:
                self._count("_failures")
                raise
            self._entries[key] = result
            self._count("_computations")
            logger.debug("Cached alignment %s", key)
            return result

    def insert(self, key: AlignmentKey, alignment: PairAlignment) -> bool:
        """Insert a precomputed alignment; returns False if the key exists."""
        with self._lock_for(key):
            if key in self._entries:
                return False
            self._entries[key] = alignment
            return True

    def invalidate(
        self,
        sample_id: Optional[str] = None,
        space: Optional[str] = None,
    ) -> int:
        """Drop entries, optionally only those involving a sample or space.

        Returns
        -------
        int
            Number of entries removed
        """
        space_filter = ComparisonSpace.parse(space) if space is not None else None
        with self._guard:
            doomed = [
                key
                for key in self._entries
                if (sample_id is None or key.involves(sample_id))
                and (space_filter is None or key.space == space_filter)
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("Invalidated %d cached alignments", len(doomed))
        return len(doomed)

    def clear(self) -> int:
        return self.invalidate()

    def keys(self) -> List[AlignmentKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def n_computations(self) -> int:
        """Number of alignments actually computed (not served from cache)."""
        return self._computations

    def stats(self) -> Dict[str, int]:
        with self._guard:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "computations": self._computations,
                "failures": self._failures,
            }
