import pytest

from collector.errors import StoreError


def insert_action(store, name):
    return store.execute_write(
        "INSERT INTO actions (action_name, timestamp, ip_address) VALUES (:name, 1, NULL)", {"name": name}
    )


def test_schema_creation_is_idempotent(store):
    store.create_schema()

    assert store.fetch_count("SELECT COUNT(*) AS count FROM rate_limits") == 0


def test_rows_come_back_as_dicts(store):
    assert insert_action(store, "play") == 1

    row = store.fetch_one("SELECT action_name, installation_id FROM actions")

    assert row == {"action_name": "play", "installation_id": "0"}
    assert store.fetch_all("SELECT action_name FROM actions") == [{"action_name": "play"}]


def test_fetch_one_without_rows(store):
    assert store.fetch_one("SELECT * FROM actions WHERE id = :id", {"id": 99}) is None
    assert store.fetch_count("SELECT MAX(id) AS count FROM actions") == 0


def test_errors_default_to_empty_installation_id(store):
    store.execute_write("INSERT INTO errors (timestamp, error_message) VALUES (1, 'boom')")

    assert store.fetch_one("SELECT installation_id FROM errors")["installation_id"] == ""


def test_transaction_commits(store):
    with store.transaction():
        insert_action(store, "play")
        insert_action(store, "pause")

    assert store.fetch_count("SELECT COUNT(*) AS count FROM actions") == 2


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            insert_action(store, "play")
            raise RuntimeError("abort")

    assert store.fetch_count("SELECT COUNT(*) AS count FROM actions") == 0


def test_nested_transaction_joins_outer(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                insert_action(store, "play")
            raise RuntimeError("abort")

    assert store.fetch_count("SELECT COUNT(*) AS count FROM actions") == 0


def test_driver_errors_become_store_errors(store):
    with pytest.raises(StoreError):
        store.fetch_all("SELECT * FROM missing_table")
    with pytest.raises(StoreError):
        store.execute_write("INSERT INTO actions (id) VALUES (:id)", {"id": 1})


def test_primary_key_covers_ip_and_endpoint(store):
    store.execute_write(
        "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) VALUES ('a', 'action', 1, 1)"
    )
    store.execute_write(
        "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) "
        "VALUES ('a', 'installation', 1, 1)"
    )

    with pytest.raises(StoreError):
        store.execute_write(
            "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) "
            "VALUES ('a', 'action', 1, 1)"
        )
