"""Per-publication usage accounting.

Counters are mutated by the data path (usage reports) and read by API
callers. Every mutation and snapshot happens under one lock, so a reader
never sees a half-applied call; snapshots are copies.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

import structlog

from .models import UsageStats, utcnow

logger = structlog.get_logger("publishing.usage")

Key = Tuple[str, str]


@dataclass
class _Counters:
    total_requests: int = 0
    total_tokens: int = 0
    errors: int = 0
    last_used: Optional[datetime] = None

    def snapshot(self) -> UsageStats:
        return UsageStats(
            total_requests=self.total_requests,
            total_tokens=self.total_tokens,
            errors=self.errors,
            last_used=self.last_used,
        )


class UsageTracker:
    """Thread-safe usage counters keyed by ``(tenant_id, model_name)``.

    Only registered publications are tracked; reports for anything else are
    dropped. Changed counters are remembered until ``drain_dirty`` hands
    them to the reconciler for persistence.
    """

    def __init__(self):
        self._counters: Dict[Key, _Counters] = {}
        self._dirty = set()
        self._lock = threading.Lock()

    def register(self, tenant_id: str, model_name: str, seed: Optional[UsageStats] = None) -> None:
        """Start tracking a publication, optionally from persisted counters."""
        with self._lock:
            if (tenant_id, model_name) in self._counters:
                return
            counters = _Counters()
            if seed is not None:
                counters = _Counters(
                    total_requests=seed.total_requests,
                    total_tokens=seed.total_tokens,
                    errors=seed.errors,
                    last_used=seed.last_used,
                )
            self._counters[(tenant_id, model_name)] = counters

    def forget(self, tenant_id: str, model_name: str) -> None:
        with self._lock:
            self._counters.pop((tenant_id, model_name), None)
            self._dirty.discard((tenant_id, model_name))

    def is_tracked(self, tenant_id: str, model_name: str) -> bool:
        with self._lock:
            return (tenant_id, model_name) in self._counters

    def record_call(self, tenant_id: str, model_name: str, tokens_consumed: int = 0, success: bool = True) -> bool:
        """Account one external call. Returns ``False`` if the key is untracked."""
        with self._lock:
            counters = self._counters.get((tenant_id, model_name))
            if counters is None:
                logger.debug("Dropping usage for untracked model", tenant_id=tenant_id, model_name=model_name)
                return False
            counters.total_requests += 1
            counters.total_tokens += max(int(tokens_consumed), 0)
            if not success:
                counters.errors += 1
            counters.last_used = utcnow()
            self._dirty.add((tenant_id, model_name))
            return True

    def get_usage(self, tenant_id: str, model_name: str) -> Optional[UsageStats]:
        """Point-in-time copy of a publication's counters."""
        with self._lock:
            counters = self._counters.get((tenant_id, model_name))
            return counters.snapshot() if counters is not None else None

    def drain_dirty(self) -> Dict[Key, UsageStats]:
        """Snapshots of counters changed since the last drain."""
        with self._lock:
            drained = {
                key: self._counters[key].snapshot()
                for key in self._dirty
                if key in self._counters
            }
            self._dirty.clear()
            return drained

    def mark_dirty(self, keys: Iterable[Key]) -> None:
        """Queue keys for the next flush again (after a failed write)."""
        with self._lock:
            self._dirty.update(key for key in keys if key in self._counters)
