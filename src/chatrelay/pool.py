import contextlib
import logging
import threading
import time
from typing import Any, Callable, Union

from .env import load_credentials_from_env
from .errors import ConfigurationError
from .policies import SelectionPolicy, coerce_policy
from .state import CredentialEntry
from .types import CredentialConfig

# seconds
DEFAULT_ROTATION_DELAY = 1.5
DEFAULT_LIMIT_DURATION = 60.0


class CredentialPool:
    """Fixed set of backend credentials plus their availability bookkeeping.

    Selection never mutates an entry; only :meth:`record_success` and
    :meth:`mark_limited` do. All of them run under one lock, so the pool can be
    shared by threads and by asyncio tasks alike.
    """

    def __init__(
        self,
        keys: list[CredentialConfig],
        handle_factory: Union[Callable[[CredentialConfig], Any], None] = None,
        policy: Union[object, None] = None,
        rotation_delay: float = DEFAULT_ROTATION_DELAY,
        clock: Callable[[], float] = time.time,
        log_level: Union[int, None] = None,
    ):
        """Initialize a CredentialPool.

        Args:
            keys (list[CredentialConfig]): configured backend keys, in order
            handle_factory (Callable | None): builds the backend client bound to a
                key; the raw token is used as the handle when omitted
            policy (object | None): selection policy object, "lru" | "random",
                or a ranking key function
            rotation_delay (float): soft minimum spacing between uses of one key
            clock (Callable[[], float]): time source in seconds
            log_level (int | None): log level for the "chatrelay" logger

        Raises:
            ConfigurationError: if no usable key is left
        """
        self._logger = logging.getLogger("chatrelay")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)
        self._clock = clock
        self._policy: SelectionPolicy = coerce_policy(policy, rotation_delay)
        self._lock = threading.Lock()
        self._entries: list[CredentialEntry] = []
        for pos, cfg in enumerate(keys):
            try:
                handle = handle_factory(cfg) if handle_factory is not None else cfg.token
            except Exception as e:
                self._logger.error(f"failed to initialize key={cfg.name} index={pos + 1}: {e}")
                continue
            self._entries.append(CredentialEntry(index=pos + 1, name=cfg.name, handle=handle))
        if not self._entries:
            raise ConfigurationError("chatrelay: no valid backend credentials configured")
        self._logger.info(
            f"initialized {len(self._entries)}/{len(keys)} credential(s) for rotation"
        )

    def _now(self) -> float:
        return self._clock()

    @property
    def entries(self) -> list[CredentialEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ---------- selection ----------

    def _eligible(self, now: float) -> list[CredentialEntry]:
        return [e for e in self._entries if e.is_eligible(now)]

    def eligible_count(self) -> int:
        with self._lock:
            return len(self._eligible(self._now()))

    def acquire(
        self, excluding: Union[CredentialEntry, None] = None
    ) -> Union[CredentialEntry, None]:
        """Return the next credential to use, or None when every one is limited."""
        with self._lock:
            now = self._now()
            eligible = self._eligible(now)
            if not eligible:
                return None
            entry = self._policy.select(eligible, now, excluding)
        self._logger.debug(f"selected key={entry.name} index={entry.index}/{len(self._entries)}")
        return entry

    # ---------- marking ----------

    def mark_limited(
        self, entry: CredentialEntry, duration: float = DEFAULT_LIMIT_DURATION
    ) -> None:
        with self._lock:
            now = self._now()
            entry.limited = True
            entry.limited_until = now + duration
            entry.failures += 1
        self._logger.warning(
            f"key={entry.name} index={entry.index} limited for {duration:.0f}s"
        )

    def record_success(self, entry: CredentialEntry) -> None:
        cleared = False
        with self._lock:
            now = self._now()
            entry.last_used_at = max(entry.last_used_at, now)
            entry.successes += 1
            if entry.limited and now > entry.limited_until:
                entry.limited = False
                cleared = True
        if cleared:
            self._logger.info(f"key={entry.name} index={entry.index} back online")

    # ---------- status ----------

    def snapshot(self) -> dict:
        with self._lock:
            now = self._now()
            limited = [
                {"index": e.index, "remaining_seconds": e.remaining_seconds(now)}
                for e in self._entries
                if not e.is_eligible(now)
            ]
            return {
                "total": len(self._entries),
                "available": len(self._entries) - len(limited),
                "limited": limited,
            }

    # ---------- convenience: build keys from env ----------
    @classmethod
    def from_env(
        cls,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ):
        """Create a CredentialPool from environment variables.

        Args:
            names (Iterable[str] | None): explicit variable names (GOOGLE_API_KEY if
                neither names nor prefix is given)
            prefix (str | None): read every variable starting with this prefix
            env_path (str | None): optional .env file; the real environment wins

            kwargs keywords:
            to_lower_names, split_commas, strip_prefix: forwarded to the loader
            anything else: forwarded to CredentialPool()
        """
        loader_keys = {
            k: kwargs.pop(k)
            for k in list(kwargs.keys())
            if k in {"to_lower_names", "split_commas", "strip_prefix"}
        }
        keys = load_credentials_from_env(
            names=names, prefix=prefix, env_path=env_path, **loader_keys
        )
        return cls(keys, **kwargs)
