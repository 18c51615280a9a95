"""Shared test fixtures."""

import pytest

from src.storage.gateway import PersistenceGateway


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("src.config.settings.turso_database_url", "")


@pytest.fixture
def memory_gateway() -> PersistenceGateway:
    """A gateway with no primary store: everything lives in the fallback."""
    return PersistenceGateway(primary=None)


@pytest.fixture
async def sqlite_gateway(tmp_path, _no_turso):
    """A gateway backed by a real local libsql file."""
    gateway = await PersistenceGateway.open(local_path_override=tmp_path / "chat.db")
    yield gateway
    await gateway.close()


class FakeProvider:
    """Stands in for ``ChatProvider``: replays tokens, optionally failing after them."""

    configured = True

    def __init__(self, tokens=("Hello", " there", "."), error=None, usage=None) -> None:
        self.tokens = list(tokens)
        self.error = error
        self.usage = usage or {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}
        self.requests: list[dict] = []
        self.closed = False

    async def stream(self, messages, model, temperature):
        self.requests.append({"messages": messages, "model": model, "temperature": temperature})
        try:
            for token in self.tokens:
                yield token
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def complete(self, messages, model, temperature):
        from src.errors import classify_provider_error
        from src.llm.provider import Completion

        self.requests.append({"messages": messages, "model": model, "temperature": temperature})
        if self.error is not None:
            raise classify_provider_error(self.error)
        return Completion(text="".join(self.tokens), usage=self.usage)


@pytest.fixture
def fake_provider() -> FakeProvider:
    """A provider replaying "Hello there." (set ``tokens``/``error`` to change it)."""
    return FakeProvider()
