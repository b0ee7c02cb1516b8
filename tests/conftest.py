import pytest

from chatrelay import Candidate, CredentialConfig, CredentialPool, GenerationResult


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """Backend handle that replays a script of results / exceptions, then repeats the last."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def invoke(self, prompt, config):
        self.calls.append((prompt, config))
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, str):
            return GenerationResult([Candidate("STOP", step)])
        return step


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_pool(clock):
    def _make(n=2, handles=None, **kwargs):
        keys = [CredentialConfig(f"k{i + 1}", f"T{i + 1}") for i in range(n)]
        if handles is not None:
            kwargs["handle_factory"] = lambda cfg: handles[keys.index(cfg)]
        kwargs.setdefault("clock", clock)
        return CredentialPool(keys, **kwargs)

    return _make


@pytest.fixture
def sleeps():
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
