"""Unit tests for the DuckDB chat store."""
from unittest.mock import patch

import duckdb
import pytest

from parley.chat.errors import PersistenceFailure
from parley.chat.schemas import Attachment, ChatMessage
from parley.chat.store import ChatStore


def make_message(channel="General", body="hi", **kwargs):
    return ChatMessage(channelKey=channel, senderId="c1", senderName="alice", body=body, **kwargs)


class TestRooms:
    def test_upsert_is_idempotent(self, store):
        room, created = store.upsert_room("General")
        again, created_again = store.upsert_room("General")

        assert created is True
        assert created_again is False
        assert again.name == room.name
        assert again.createdAt == room.createdAt

    def test_list_rooms_in_creation_order(self, store):
        for name in ("b", "a", "c"):
            store.upsert_room(name)
        assert [r.name for r in store.list_rooms()] == ["b", "a", "c"]

    def test_get_unknown_room(self, store):
        assert store.get_room("nope") is None

    def test_create_is_one_conditional_insert(self, store):
        with patch.object(store, "_execute", wraps=store._execute) as execute:
            _, created = store.upsert_room("General")

        assert created is True
        assert execute.call_count == 1
        assert "ON CONFLICT DO NOTHING" in execute.call_args[0][0]


class TestMessages:
    def test_insert_and_get(self, store):
        message = store.insert_message(make_message())
        loaded = store.get_message(message.id)

        assert loaded.id == message.id
        assert loaded.body == "hi"
        assert loaded.senderName == "alice"
        assert loaded.readBy == []
        assert loaded.reactions == {}
        assert loaded.delivered is False

    def test_file_message_round_trip(self, store):
        message = make_message(
            body=None, attachment=Attachment(url="/uploads/x.pdf", fileName="report.pdf")
        )
        store.insert_message(message)
        loaded = store.get_message(message.id)

        assert loaded.body is None
        assert loaded.attachment.fileName == "report.pdf"
        assert loaded.is_file

    def test_mark_delivered(self, store):
        message = store.insert_message(make_message())
        store.mark_delivered(message.id)
        assert store.get_message(message.id).delivered is True

    def test_duplicate_id_raises_persistence_failure(self, store):
        message = store.insert_message(make_message())
        with pytest.raises(PersistenceFailure):
            store.insert_message(message)

    def test_list_messages_newest_n_oldest_first(self, store):
        for i in range(5):
            store.insert_message(make_message(body=f"m{i}", timestamp=1000.0 + i))
        store.insert_message(make_message(channel="Other", body="elsewhere", timestamp=2000.0))

        recent = store.list_messages("General", limit=3)
        assert [m.body for m in recent] == ["m2", "m3", "m4"]

        everything = store.list_messages(limit=10)
        assert everything[-1].body == "elsewhere"

    def test_message_ids_sort_by_creation(self):
        first = make_message()
        second = make_message()
        assert first.id < second.id


class TestAppendOnlySets:
    def test_add_reaction_is_idempotent(self, store):
        message = store.insert_message(make_message())

        assert store.add_reaction(message.id, "👍", "bob") is True
        assert store.add_reaction(message.id, "👍", "bob") is False
        assert store.get_reactions(message.id) == {"👍": ["bob"]}

    def test_add_decides_with_a_single_statement(self, store):
        message = store.insert_message(make_message())

        with patch.object(store, "_execute", wraps=store._execute) as execute:
            first = store.add_reaction(message.id, "👍", "bob")
            second = store.add_reaction(message.id, "👍", "bob")

        assert (first, second) == (True, False)
        assert execute.call_count == 2
        for call in execute.call_args_list:
            assert "ON CONFLICT DO NOTHING" in call[0][0]

    def test_reactions_from_several_users_all_land(self, store):
        message = store.insert_message(make_message())
        store.add_reaction(message.id, "👍", "bob")
        store.add_reaction(message.id, "👍", "carol")
        store.add_reaction(message.id, "🎉", "bob")

        reactions = store.get_message(message.id).reactions
        assert sorted(reactions["👍"]) == ["bob", "carol"]
        assert reactions["🎉"] == ["bob"]

    def test_add_reader_is_idempotent(self, store):
        message = store.insert_message(make_message())

        assert store.add_reader(message.id, "bob") is True
        assert store.add_reader(message.id, "bob") is False
        store.add_reader(message.id, "carol")
        assert store.get_message(message.id).readBy == ["bob", "carol"]


class TestSingleton:
    def test_get_instance_returns_same_store(self, store):
        assert ChatStore.get_instance() is store

    def test_duckdb_errors_are_wrapped(self, store):
        with patch.object(store, "_get_connection") as get_conn:
            get_conn.return_value.execute.side_effect = duckdb.Error("disk full")
            with pytest.raises(PersistenceFailure):
                store.list_rooms()
