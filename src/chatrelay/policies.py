import inspect
import random
from typing import Callable, Union

from .state import CredentialEntry

# Defaults used when inspect.signature cannot determine argument counts
DEFAULT_KEYFN_ARGC = 1  # key_fn(entry)

# key fns receive the current time at 2+ args
KEYFN_WITH_NOW_ARGC = 2


def _count_positional_args(fn, default: int) -> int:
    """Return count of positional params for fn; fall back to default on failure."""
    try:
        sig = inspect.signature(fn)
        return len(
            [
                p
                for p in sig.parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        )
    except (TypeError, ValueError):
        return default


class SelectionPolicy:
    """Decides which *eligible* credential to hand out next.

    ``eligible`` is never empty. ``excluding`` is the entry that served the
    previous attempt of the same request; policies should avoid it when another
    eligible entry exists.
    """

    def rank(self, eligible: list[CredentialEntry], now: float) -> list[CredentialEntry]:
        return list(eligible)

    def select(
        self,
        eligible: list[CredentialEntry],
        now: float,
        excluding: Union[CredentialEntry, None] = None,
    ) -> CredentialEntry:
        ranked = self.rank(eligible, now)
        if excluding is not None and len(ranked) > 1:
            others = [e for e in ranked if e is not excluding]
            if others:
                ranked = others
        return ranked[0]


class LeastRecentlyUsedPolicy(SelectionPolicy):
    """Least recently *successful* entry first, with a soft spacing preference.

    If the best entry was used less than ``rotation_delay`` seconds ago, the
    first entry that satisfies the spacing wins; when none does, the best entry
    is used anyway.
    """

    def __init__(self, rotation_delay: float = 1.5):
        self.rotation_delay = rotation_delay

    def rank(self, eligible, now):
        return sorted(eligible, key=lambda e: e.last_used_at)

    def select(self, eligible, now, excluding=None):
        ranked = self.rank(eligible, now)
        if excluding is not None and len(ranked) > 1:
            ranked = [e for e in ranked if e is not excluding] or ranked
        selected = ranked[0]
        if now - selected.last_used_at < self.rotation_delay:
            ready = next(
                (e for e in ranked if now - e.last_used_at >= self.rotation_delay), None
            )
            return ready or selected
        return selected


class RandomPolicy(SelectionPolicy):
    def rank(self, eligible, now):
        shuffled = list(eligible)
        random.shuffle(shuffled)
        return shuffled


class KeyFunctionPolicy(SelectionPolicy):
    """Wrap a user-supplied key function for ranking eligible entries.

    Accepted function signatures:
        - key_fn(entry) -> comparable
        - key_fn(entry, now) -> comparable
    """

    def __init__(self, key_fn: Callable):
        self.key_fn = key_fn

    def rank(self, eligible, now):
        argc = _count_positional_args(self.key_fn, DEFAULT_KEYFN_ARGC)

        def _score(e):
            return self.key_fn(e, now) if argc >= KEYFN_WITH_NOW_ARGC else self.key_fn(e)

        return sorted(eligible, key=_score)


def coerce_policy(policy: Union[object, None], rotation_delay: float = 1.5) -> SelectionPolicy:
    """Turn None | str | SelectionPolicy | callable into a SelectionPolicy.

    Accepted inputs:
      - None      -> LeastRecentlyUsedPolicy(rotation_delay)
      - "lru"     -> LeastRecentlyUsedPolicy(rotation_delay)
      - "random"  -> RandomPolicy
      - SelectionPolicy instance (returned as-is)
      - callable key function (entry[, now]); wrapped into KeyFunctionPolicy.
    """
    if policy is None:
        return LeastRecentlyUsedPolicy(rotation_delay)
    if isinstance(policy, SelectionPolicy):
        return policy
    if isinstance(policy, str):
        name = policy.lower()
        if name == "lru":
            return LeastRecentlyUsedPolicy(rotation_delay)
        if name == "random":
            return RandomPolicy()
        raise ValueError(
            "Unknown policy string. Use 'lru' or 'random', or pass a callable/SelectionPolicy."
        )
    if callable(policy):
        return KeyFunctionPolicy(policy)
    raise TypeError("policy must be None, 'lru'|'random', SelectionPolicy, or a callable")
