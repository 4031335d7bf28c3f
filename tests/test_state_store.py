import sqlite3
from contextlib import contextmanager

import pytest

from src.adapters.sqlite_repository import SCHEMA_STATEMENTS
from src.adapters.state_store import StateStore
from src.domain.exceptions import RepositoryError, ValidationError
from src.domain.models import CollectionRecord


def _create_store() -> tuple[StateStore, sqlite3.Connection]:
    connection = sqlite3.connect(":memory:")
    connection.row_factory = sqlite3.Row
    for statement in SCHEMA_STATEMENTS:
        connection.execute(statement)
    connection.commit()

    @contextmanager
    def _get_conn() -> sqlite3.Connection:
        yield connection

    return StateStore(_get_conn), connection


def test_sub_state_cursor_roundtrip() -> None:
    store, connection = _create_store()

    try:
        assert store.get_sub_state_cursor("firehose") is None

        store.update_sub_state_cursor("firehose", 1_000)
        store.update_sub_state_cursor("firehose", 900)

        state = store.get_sub_state_cursor("firehose")
        assert state.service == "firehose"
        # Last write wins; there is no monotonic guard
        assert state.cursor == 900
    finally:
        connection.close()


def test_collection_records() -> None:
    store, connection = _create_store()

    try:
        store.insert_or_replace_record("pins", {"uris": ["at://a"]})
        store.insert_or_replace_record("pins", {"uris": ["at://b"]})
        written = store.replace_many_records(
            [
                CollectionRecord(key="alpha", value=[1, 2]),
                CollectionRecord(key="zulu", value="text"),
            ]
        )

        assert written == 2
        assert store.get_collection("pins").value == {"uris": ["at://b"]}
        assert [r.key for r in store.list_collection()] == ["alpha", "pins", "zulu"]
        assert store.delete_record("alpha") is True
        assert store.delete_record("alpha") is False
        assert store.get_collection("alpha") is None
    finally:
        connection.close()


def test_replace_many_records_is_all_or_nothing() -> None:
    store, connection = _create_store()

    try:
        store.insert_or_replace_record("alpha", "original")
        # A list is not bindable as a key, so the driver rejects the second row
        broken = CollectionRecord.model_construct(key=["beta"], value=2)

        with pytest.raises(RepositoryError):
            store.replace_many_records(
                [CollectionRecord(key="alpha", value="replaced"), broken]
            )

        assert store.get_collection("alpha").value == "original"
        assert [r.key for r in store.list_collection()] == ["alpha"]
    finally:
        connection.close()


def test_list_members() -> None:
    store, connection = _create_store()

    try:
        store.upsert_list_member("did:b", {"handle": "b.test"})
        store.upsert_list_member("did:a")
        store.upsert_list_member("did:a", {"handle": "a.test"})

        assert store.get_list_members() == ["did:a", "did:b"]
        assert store.delete_many_did(["did:a", "did:missing"]) == 1
        assert store.delete_many_did([]) == 0
        assert store.get_list_members() == ["did:b"]
    finally:
        connection.close()


def test_distinct_values_flatten_arrays() -> None:
    store, connection = _create_store()

    try:
        connection.executemany(
            "INSERT INTO post (uri, cid, author, indexed_at, algo_tags) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                ("at://1", "c1", "did:a", 1, '["news", "art"]'),
                ("at://2", "c2", "did:b", 2, '["news"]'),
                ("at://3", "c3", "did:a", 3, '["cats"]'),
            ],
        )
        connection.commit()

        assert store.get_distinct_from_collection("post", "author") == [
            "did:a",
            "did:b",
        ]
        assert store.get_distinct_from_collection("post", "algo_tags") == [
            "art",
            "cats",
            "news",
        ]
    finally:
        connection.close()


@pytest.mark.parametrize(
    ("table", "field"),
    [("post", "text"), ("post", "uri; DROP TABLE post"), ("secrets", "key")],
)
def test_distinct_rejects_unknown_fields(table, field) -> None:
    store, connection = _create_store()

    try:
        with pytest.raises(ValidationError):
            store.get_distinct_from_collection(table, field)
    finally:
        connection.close()


def test_driver_errors_become_repository_errors() -> None:
    store, connection = _create_store()

    try:
        connection.execute("DROP TABLE sub_state")
        connection.commit()

        with pytest.raises(RepositoryError):
            store.get_sub_state_cursor("firehose")
    finally:
        connection.close()


def test_state_store_through_repository(repo) -> None:
    store = repo.state_store()

    store.update_sub_state_cursor("firehose", 42)
    store.insert_or_replace_record("feeds", {"enabled": ["news"]})
    store.upsert_list_member("did:a", {"reason": "spam"})

    assert repo.state_store() is store
    assert store.get_sub_state_cursor("firehose").cursor == 42
    assert store.get_collection("feeds").value == {"enabled": ["news"]}
    assert store.get_list_members() == ["did:a"]
