"""Tests for on-disk group chat storage."""

import json
import pathlib

import pytest

from agentrelay.chatstore import GroupChatStore
from agentrelay.errors import ChatNotFoundError, DuplicateParticipantError, ParticipantNotFoundError
from agentrelay.events import GroupChatParticipant, HistoryEntryType, ModeratorConfig
from agentrelay.history import new_entry


def _make_participant(name="Alice", agent_id="batch"):
    return GroupChatParticipant(name=name, agent_id=agent_id,
                                session_id=f"sess-{name}", added_at=1.0)


class TestChats:

    def test_create_layout(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "claude-code",
                            ModeratorConfig(custom_args="--fast", custom_env_vars={"A": "1"}))

        chat_dir = tmp_path / chat.id
        assert (chat_dir / "metadata.json").is_file()
        assert (chat_dir / "chat.log").is_file()
        assert (chat_dir / "images").is_dir()
        assert chat.log_path == str(chat_dir / "chat.log")

        metadata = json.loads((chat_dir / "metadata.json").read_text())
        assert metadata["moderatorAgentId"] == "claude-code"
        assert metadata["moderatorConfig"]["customEnvVars"] == {"A": "1"}

    def test_load_round_trip(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex", ModeratorConfig(custom_path="/opt/codex"))
        loaded = store.load(chat.id)
        assert loaded.name == "Team"
        assert loaded.moderator_config.custom_path == "/opt/codex"
        assert loaded.moderator_session_id is None

    def test_missing_chat(self, tmp_path):
        store = GroupChatStore(tmp_path)
        assert store.load("nope") is None
        with pytest.raises(ChatNotFoundError):
            store.require("nope")

    def test_incomplete_metadata(self, tmp_path):
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "metadata.json").write_text('{"id": "broken"}')
        assert GroupChatStore(tmp_path).load("broken") is None

    def test_list_sorted_by_creation(self, tmp_path):
        store = GroupChatStore(tmp_path)
        first = store.create("First", "codex")
        second = store.create("Second", "codex")
        (tmp_path / "stray-file").write_text("")
        assert [c.id for c in store.list_chats()] == [first.id, second.id]
        assert GroupChatStore(tmp_path / "missing").list_chats() == []

    def test_update(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        store.update(chat.id, name="Renamed")
        assert store.load(chat.id).name == "Renamed"
        with pytest.raises(TypeError):
            store.update(chat.id, log_path="/elsewhere")

    def test_delete(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        assert store.delete(chat.id) is True
        assert not (tmp_path / chat.id).exists()
        assert store.delete(chat.id) is False

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        store.update(chat.id, name="Again")
        leftovers = [p.name for p in pathlib.Path(tmp_path, chat.id).iterdir()
                     if p.name.endswith(".tmp")]
        assert leftovers == []


class TestParticipants:

    def test_add_get_remove(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        store.add_participant(chat.id, _make_participant("Alice"))
        store.add_participant(chat.id, _make_participant("Bob"))

        assert store.get_participant(chat.id, "Alice").session_id == "sess-Alice"
        assert [p.name for p in store.load(chat.id).participants] == ["Alice", "Bob"]

        store.remove_participant(chat.id, "Alice")
        assert store.get_participant(chat.id, "Alice") is None

    def test_duplicate_rejected(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        store.add_participant(chat.id, _make_participant("Alice"))
        with pytest.raises(DuplicateParticipantError):
            store.add_participant(chat.id, _make_participant("Alice", agent_id="other"))
        assert len(store.load(chat.id).participants) == 1

    def test_update_participant(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        store.add_participant(chat.id, _make_participant("Alice"))
        store.update_participant(chat.id, "Alice", message_count=3, last_summary="did it")

        alice = store.get_participant(chat.id, "Alice")
        assert alice.message_count == 3
        assert alice.last_summary == "did it"

        with pytest.raises(ParticipantNotFoundError):
            store.update_participant(chat.id, "Zed", message_count=1)
        with pytest.raises(TypeError):
            store.update_participant(chat.id, "Alice", name="Alicia")


class TestHistory:

    def test_crud(self, tmp_path):
        store = GroupChatStore(tmp_path)
        chat = store.create("Team", "codex")
        first = store.add_history_entry(chat.id, new_entry(
            HistoryEntryType.RESPONSE, "Fixed the bug", participant_name="Alice"))
        store.add_history_entry(chat.id, new_entry(HistoryEntryType.USER, "Asked a question"))

        history = store.get_history(chat.id)
        assert [e.summary for e in history] == ["Fixed the bug", "Asked a question"]
        assert history[0].participant_name == "Alice"
        assert store.history_path(chat.id).is_file()

        assert store.delete_history_entry(chat.id, first.id) is True
        assert store.delete_history_entry(chat.id, first.id) is False
        assert len(store.get_history(chat.id)) == 1

        store.clear_history(chat.id)
        assert store.get_history(chat.id) == []
