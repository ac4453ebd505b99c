from __future__ import annotations
import logging
import threading
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class StaleCache:
    """
    Read-through cache that serves the previous value while it refreshes.

    ``get_stale_then_refresh(key, loader)`` returns the cached value when one
    exists and reloads it right after; the first call for a key loads
    synchronously. ``invalidate`` drops a key (or everything), so the next
    read is fresh.
    """

    def __init__(self):
        self._values: Dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def get_stale_then_refresh(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        with self._lock:
            has_value = key in self._values
            stale = self._values.get(key)
        if not has_value:
            value = loader()
            with self._lock:
                self._values[key] = value
            return value

        try:
            fresh = loader()
        except Exception:
            # keep serving the last good value
            logger.warning("Refreshing %r failed; serving cached value", key, exc_info=True)
            return stale
        with self._lock:
            self._values[key] = fresh
        return stale

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        with self._lock:
            if key is None:
                self._values.clear()
            else:
                self._values.pop(key, None)
