import math
from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class CredentialEntry:
    index: int
    name: str
    handle: Any
    last_used_at: float = 0.0
    limited: bool = False
    limited_until: float = 0.0
    successes: int = 0
    failures: int = 0

    def is_eligible(self, now: float) -> bool:
        return not self.limited or now > self.limited_until

    def remaining_seconds(self, now: float) -> int:
        return max(0, math.ceil(self.limited_until - now))
