import pytest

from collector.store import Store


class FrozenClock:
    """Callable stand-in for ``time.time`` that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'collector.db'}"


@pytest.fixture()
def store(database_url):
    store = Store.from_url(database_url)
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture()
def installation_payload():
    def build(**overrides):
        payload = {
            "platform": "darwin",
            "osVersion": "Darwin Kernel Version 23.1.0",
            "osRelease": "23.1.0",
            "pluginVersion": "1.2.0",
            "nodeVersion": "20.8.1",
            "yandexMusicConnected": False,
            "installation_id": "inst-1",
        }
        payload.update(overrides)
        return payload

    return build
