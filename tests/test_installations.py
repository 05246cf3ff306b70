import json

import pytest

from collector.errors import StoreError, ValidationError
from collector.filters import StatsFilters
from collector.installations import InstallationRecorder, decode_extra_data, encode_extra_data, percentage


@pytest.fixture()
def recorder(store, clock):
    return InstallationRecorder(store, clock=clock)


def stored_rows(store):
    return store.fetch_all("SELECT * FROM installations ORDER BY id")


def test_valid_report_is_stored(recorder, store, installation_payload):
    recorder.track(installation_payload(yandexMusicPath="/Applications/Yandex Music.app"), "10.0.0.1", "Node/20")

    (row,) = stored_rows(store)
    assert row["platform"] == "darwin"
    assert row["plugin_version"] == "1.2.0"
    assert row["os_release"] == "23.1.0"
    assert row["yandex_music_connected"] == 0
    assert row["yandex_music_path"] == "/Applications/Yandex Music.app"
    assert row["ip_address"] == "10.0.0.1"
    assert row["user_agent"] == "Node/20"
    assert row["extra_data"] is None


def test_unknown_fields_go_to_extra_data(recorder, store, installation_payload):
    payload = installation_payload(locale="ru-RU", screens={"count": 2, "primary": True})

    report = recorder.track(payload, "10.0.0.1")

    assert report.extra_data == {"locale": "ru-RU", "screens": {"count": 2, "primary": True}}
    (row,) = stored_rows(store)
    assert row["extra_data"] == '{"locale":"ru-RU","screens":{"count":2,"primary":true}}'
    assert "platform" not in json.loads(row["extra_data"])


def test_extra_data_encoding_is_canonical():
    assert encode_extra_data({"b": 1, "a": [1, 2]}) == encode_extra_data({"a": [1, 2], "b": 1})
    assert encode_extra_data({}) is None
    assert encode_extra_data(None) is None


@pytest.mark.parametrize(
    "field",
    ["platform", "osVersion", "osRelease", "pluginVersion", "nodeVersion", "yandexMusicConnected", "installation_id"],
)
def test_missing_required_field_is_rejected(recorder, installation_payload, field):
    payload = installation_payload()
    del payload[field]

    with pytest.raises(ValidationError):
        recorder.validate(payload)


@pytest.mark.parametrize(
    "overrides",
    [
        {"platform": ""},
        {"platform": 3},
        {"installation_id": ""},
        {"installation_id": 17},
        {"yandexMusicConnected": "true"},
        {"yandexMusicConnected": 1},
        {"yandexMusicConnected": None},
        {"pluginVersion": None},
        {"yandexMusicPath": 5},
    ],
)
def test_mistyped_fields_are_rejected(recorder, installation_payload, overrides):
    with pytest.raises(ValidationError):
        recorder.validate(installation_payload(**overrides))


@pytest.mark.parametrize("payload", [[], "report", 12, None])
def test_non_object_payload_is_rejected(recorder, payload):
    with pytest.raises(ValidationError):
        recorder.validate(payload)


def test_long_fields_are_truncated(recorder, store, installation_payload):
    recorder.track(installation_payload(platform="p" * 80, streamDeckLanguage="l" * 40), None)

    (row,) = stored_rows(store)
    assert row["platform"] == "p" * 50
    assert row["stream_deck_language"] == "l" * 20


def test_reports_are_append_only(recorder, store, installation_payload):
    recorder.track(installation_payload(), "10.0.0.1")
    recorder.track(installation_payload(), "10.0.0.1")

    assert len(stored_rows(store)) == 2
    stats = recorder.stats()
    assert stats.total_installations == 2
    assert stats.unique_installations == 1


def test_breakdowns_use_latest_report_per_installation(recorder, installation_payload):
    recorder.track(installation_payload(installation_id="X", pluginVersion="1.0.0", osRelease="22.0"), None)
    recorder.track(installation_payload(installation_id="X", pluginVersion="1.1.0", osRelease="22.0"), None)
    recorder.track(installation_payload(installation_id="X", pluginVersion="1.2.0", osRelease="23.1"), None)
    recorder.track(
        installation_payload(installation_id="Y", platform="win32", pluginVersion="1.1.0", osRelease="10.0.22631"),
        None,
    )

    versions = recorder.version_breakdown()
    assert [(v.version, v.count) for v in versions] == [("1.1.0", 1), ("1.2.0", 1)]

    os_counts = recorder.os_breakdown()
    assert sorted((o.os, o.count) for o in os_counts) == [("darwin 23.1", 1), ("win32 10.0.22631", 1)]

    recent = recorder.recent_installations()
    assert [(r["installation_id"], r["plugin_version"]) for r in recent] == [("Y", "1.1.0"), ("X", "1.2.0")]


def test_recent_installations_decode_extra_data(recorder, installation_payload):
    recorder.track(installation_payload(theme="dark", yandexMusicConnected=True), None)

    (latest,) = recorder.recent_installations()
    assert latest["extra_data"] == {"theme": "dark"}
    assert latest["yandex_music_connected"] is True


def test_detection_and_connection_rates(recorder, installation_payload):
    # A was connected earlier but its latest report is disconnected
    recorder.track(installation_payload(installation_id="A", yandexMusicConnected=True), None)
    recorder.track(installation_payload(installation_id="A", yandexMusicConnected=False), None)
    recorder.track(installation_payload(installation_id="B", yandexMusicConnected=True), None)
    recorder.track(installation_payload(installation_id="C", yandexMusicPath="C:\\Yandex\\Music.exe"), None)
    recorder.track(installation_payload(installation_id="D", yandexMusicPath=""), None)

    stats = recorder.stats()

    assert stats.unique_installations == 4
    assert stats.yandex_music_connection_rate == 25.0
    assert stats.yandex_music_detection_rate == 50.0
    assert stats.yandex_music_detection_rate >= stats.yandex_music_connection_rate


def test_rates_round_to_one_decimal(recorder, installation_payload):
    recorder.track(installation_payload(installation_id="A", yandexMusicConnected=True), None)
    recorder.track(installation_payload(installation_id="B"), None)
    recorder.track(installation_payload(installation_id="C"), None)

    stats = recorder.stats()

    assert stats.yandex_music_connection_rate == round(100 * 1 / 3, 1) == 33.3


def test_percentage_of_nothing_is_zero():
    assert percentage(0, 0) == 0.0
    assert percentage(3, 4) == 75.0


def test_rates_are_zero_without_installations(recorder):
    stats = recorder.stats()

    assert stats.yandex_music_detection_rate == 0.0
    assert stats.yandex_music_connection_rate == 0.0


def test_new_versus_active_installations(recorder, clock, installation_payload):
    recorder.track(installation_payload(installation_id="old"), None)
    clock.advance(10 * 86400)
    recorder.track(installation_payload(installation_id="old"), None)
    recorder.track(installation_payload(installation_id="fresh"), None)

    stats = recorder.stats()

    assert stats.installations_24h == 2
    assert stats.new_installations_24h == 1
    assert stats.new_installations_7d == 1
    assert stats.new_installations_30d == 2
    assert stats.installations_30d == 2


def test_platform_breakdown_counts_reports(recorder, installation_payload):
    recorder.track(installation_payload(installation_id="A"), None)
    recorder.track(installation_payload(installation_id="A"), None)
    recorder.track(installation_payload(installation_id="B", platform="win32"), None)

    breakdown = recorder.stats().platform_breakdown

    assert [(p.platform, p.count) for p in breakdown] == [("darwin", 2), ("win32", 1)]


def test_filters_refine_reads(recorder, installation_payload):
    recorder.track(installation_payload(installation_id="A", pluginVersion="1.0.0"), "10.0.0.1")
    recorder.track(installation_payload(installation_id="B", pluginVersion="2.0.0"), "10.0.0.2")

    assert recorder.unique_installation_count(StatsFilters(version="2.0.0")) == 1
    assert recorder.unique_installation_count(StatsFilters(ip="10.0.0.1")) == 1
    assert recorder.stats(StatsFilters(installation_id="B")).total_installations == 1
    assert [v.version for v in recorder.version_breakdown(StatsFilters(ip="10.0.0.2"))] == ["2.0.0"]


def test_installations_by_ip(recorder, clock, installation_payload):
    start = int(clock())
    recorder.track(installation_payload(installation_id="A", pluginVersion="1.0.0"), "10.0.0.1")
    clock.advance(60)
    recorder.track(installation_payload(installation_id="B", pluginVersion="1.1.0"), "10.0.0.1")
    recorder.track(installation_payload(installation_id="C"), "10.0.0.2")

    by_ip = recorder.installations_by_ip()

    assert by_ip[0].ip_address == "10.0.0.1"
    assert by_ip[0].installation_count == 2
    assert by_ip[0].versions == ["1.0.0", "1.1.0"]
    assert (by_ip[0].first_reported, by_ip[0].last_reported) == (start, start + 60)


class BrokenStore:
    dialect = "sqlite"

    def execute_write(self, sql, params=None):
        raise StoreError("down")

    def fetch_count(self, sql, params=None):
        raise StoreError("down")

    def fetch_all(self, sql, params=None):
        raise StoreError("down")


def test_store_failures(clock, installation_payload):
    recorder = InstallationRecorder(BrokenStore(), clock=clock)

    with pytest.raises(StoreError):
        recorder.track(installation_payload(), None)
    assert recorder.stats().unique_installations == 0
    assert recorder.version_breakdown() == []
    assert recorder.os_breakdown() == []
    assert recorder.recent_installations() == []
    assert recorder.installations_by_ip() == []


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_json_numbers_in_extra_data_are_rejected(recorder, store, installation_payload, value):
    with pytest.raises(ValidationError):
        recorder.track(installation_payload(score=value), None)

    assert stored_rows(store) == []


def test_encode_extra_data_refuses_nan():
    with pytest.raises(ValueError):
        encode_extra_data({"x": float("nan")})


def test_unreadable_extra_data_decodes_to_empty(recorder, store, installation_payload):
    recorder.track(installation_payload(installation_id="old"), None)
    store.execute_write("UPDATE installations SET extra_data = :raw", {"raw": '{"x":NaN}'})

    (latest,) = recorder.recent_installations()
    assert latest["extra_data"] == {}
    assert decode_extra_data("not json") == {}
    assert decode_extra_data('{"theme":"dark"}') == {"theme": "dark"}


def test_percentage_rounds_half_up():
    assert percentage(1, 16) == 6.3
    assert percentage(1, 8) == 12.5
    assert percentage(5, 8) == 62.5
    assert percentage(1, 400) == 0.3
