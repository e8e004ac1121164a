"""
Cooldown-based throttling of user-triggered engine runs.

Each (user, endpoint class) pair may be triggered once per cooldown window.
This is advisory throttling at the API boundary, not a correctness mechanism.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..exceptions import RateLimitedError
from .settings_config_service import get_settings_service

ENDPOINT_CLASSES = ("remediation", "monitor", "default")


class RateLimiter:
    """Per (user, endpoint class) cooldown tracker"""

    def __init__(
        self,
        cooldowns: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if cooldowns is None:
            settings = get_settings_service()
            cooldowns = {
                name: settings.getfloat("rate_limits", f"{name}_seconds", 60)
                for name in ENDPOINT_CLASSES
            }
        self.cooldowns = cooldowns
        self.clock = clock
        self._last_calls: Dict[Tuple[int, str], float] = {}
        self._lock = threading.Lock()

    def _cooldown(self, endpoint_class: str) -> float:
        return self.cooldowns.get(endpoint_class, self.cooldowns.get("default", 60))

    def time_remaining(self, user_id: int, endpoint_class: str = "default") -> float:
        """Seconds until the user may trigger this endpoint class again"""
        with self._lock:
            last = self._last_calls.get((user_id, endpoint_class))
            if last is None:
                return 0.0
            return max(0.0, self._cooldown(endpoint_class) - (self.clock() - last))

    def check(self, user_id: int, endpoint_class: str = "default") -> None:
        """Raise RateLimitedError while the pair is cooling down"""
        remaining = self.time_remaining(user_id, endpoint_class)
        if remaining > 0:
            raise RateLimitedError(
                f"Too many {endpoint_class} requests; retry in {remaining:.0f}s",
                retry_after_seconds=remaining,
            )

    def record(self, user_id: int, endpoint_class: str = "default") -> None:
        with self._lock:
            self._last_calls[(user_id, endpoint_class)] = self.clock()

    def reset(self, user_id: Optional[int] = None) -> None:
        """Forget recorded calls, for one user or everyone"""
        with self._lock:
            if user_id is None:
                self._last_calls.clear()
            else:
                for key in [k for k in self._last_calls if k[0] == user_id]:
                    del self._last_calls[key]


_rate_limiter = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter"""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
