import contextlib
import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Union

from .pool import CredentialPool
from .types import ThrottleConfig


class RequestThrottle:
    """Admission control in front of the dispatcher.

    Combines a per-client sliding window, a process-wide minimum spacing between
    admitted requests and a global cooldown. Both the spacing and the window size
    scale with the number of currently eligible credentials, so the relay
    degrades gradually as individual keys get sidelined.
    """

    def __init__(
        self,
        pool: CredentialPool,
        config: Union[ThrottleConfig, None] = None,
        clock: Callable[[], float] = time.time,
        log_level: Union[int, None] = None,
    ):
        self._pool = pool
        self.config = config or ThrottleConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, deque[float]] = {}
        self._cooldown_until = 0.0
        self._last_admitted_at = 0.0
        self._sweep_interval = (
            self.config.sweep_interval
            if self.config.sweep_interval is not None
            else self.config.window
        )
        self._next_sweep_at = self._clock() + self._sweep_interval
        self._logger = logging.getLogger("chatrelay")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)

    def _now(self) -> float:
        return self._clock()

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._windows)

    def allow(self, client_key: str) -> bool:
        """Admit or reject one request from ``client_key``; admitted requests are recorded."""
        available = self._pool.eligible_count()
        with self._lock:
            now = self._now()
            if now >= self._next_sweep_at:
                self._prune_idle(now)
            if available == 0:
                self._logger.debug(f"reject client={client_key}: no eligible credentials")
                return False
            if now < self._cooldown_until:
                self._logger.debug(f"reject client={client_key}: global cooldown")
                return False
            min_interval = self.config.min_interval / max(1, available)
            if now - self._last_admitted_at < min_interval:
                self._logger.debug(
                    f"reject client={client_key}: spacing {min_interval:.2f}s not elapsed"
                )
                return False
            window = self._windows.get(client_key)
            if window is None:
                window = self._windows[client_key] = deque()
            window_start = now - self.config.window
            while window and window[0] <= window_start:
                window.popleft()
            adjusted_max = self.config.max_requests * max(1, available // 2)
            if len(window) >= adjusted_max:
                self._logger.info(
                    f"reject client={client_key}: {len(window)}/{adjusted_max} requests in window"
                )
                return False
            window.append(now)
            self._last_admitted_at = now
            return True

    def trigger_global_cooldown(self, duration: Union[float, None] = None) -> None:
        if duration is None:
            duration = self.config.global_cooldown
        with self._lock:
            self._cooldown_until = self._now() + duration
        self._logger.warning(f"global cooldown activated for {duration:.0f}s")

    def cooldown_remaining(self) -> float:
        with self._lock:
            return max(0.0, self._cooldown_until - self._now())

    def retry_after(self) -> int:
        """Seconds a rejected caller should wait before trying again."""
        remaining = self.cooldown_remaining()
        if remaining > 0:
            return math.ceil(remaining)
        return math.ceil(self.config.window)

    # ---------- idle client eviction ----------

    def _prune_idle(self, now: float) -> int:
        window_start = now - self.config.window
        stale = [k for k, w in self._windows.items() if not w or w[-1] <= window_start]
        for k in stale:
            del self._windows[k]
        self._next_sweep_at = now + self._sweep_interval
        if stale:
            self._logger.debug(f"evicted {len(stale)} idle client window(s)")
        return len(stale)

    def prune_idle_clients(self) -> int:
        with self._lock:
            return self._prune_idle(self._now())
