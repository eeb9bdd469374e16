"""On-disk storage for group chats.

Layout per chat::

    <root>/<chat id>/metadata.json
    <root>/<chat id>/chat.log
    <root>/<chat id>/images/
    <root>/<chat id>/history.jsonl
"""

import logging
import os
import pathlib
import shutil
import time
import uuid
from dataclasses import fields
from typing import Any, Optional

from agentrelay.errors import ChatNotFoundError, DuplicateParticipantError, ParticipantNotFoundError
from agentrelay.events import GroupChat, GroupChatParticipant, HistoryEntry, ModeratorConfig
from agentrelay.history import HistoryFile
from agentrelay.storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
LOG_FILE = "chat.log"
IMAGES_DIR = "images"
HISTORY_FILE = "history.jsonl"


def chat_to_dict(chat: GroupChat) -> dict:
    return {
        "id": chat.id,
        "name": chat.name,
        "moderatorAgentId": chat.moderator_agent_id,
        "logPath": chat.log_path,
        "imagesDir": chat.images_dir,
        "createdAt": chat.created_at,
        "participants": [p.to_dict() for p in chat.participants],
        "moderatorConfig": {
            "customPath": chat.moderator_config.custom_path,
            "customArgs": chat.moderator_config.custom_args,
            "customEnvVars": dict(chat.moderator_config.custom_env_vars),
        },
    }


def chat_from_dict(data: dict) -> GroupChat:
    config = data.get("moderatorConfig") or {}
    return GroupChat(
        id=data["id"],
        name=data.get("name", ""),
        moderator_agent_id=data.get("moderatorAgentId", ""),
        log_path=data["logPath"],
        images_dir=data["imagesDir"],
        created_at=data.get("createdAt", 0.0),
        participants=[GroupChatParticipant.from_dict(p) for p in data.get("participants") or []],
        moderator_config=ModeratorConfig(
            custom_path=config.get("customPath", ""),
            custom_args=config.get("customArgs", ""),
            custom_env_vars=dict(config.get("customEnvVars") or {}),
        ),
    )


class GroupChatStore:
    def __init__(self, root: "os.PathLike | str"):
        self.root = pathlib.Path(root).expanduser()

    def chat_dir(self, chat_id: str) -> pathlib.Path:
        return self.root / chat_id

    def history_path(self, chat_id: str) -> pathlib.Path:
        return self.chat_dir(chat_id) / HISTORY_FILE

    # -- chats ---------------------------------------------------------------

    def create(self, name: str, moderator_agent_id: str,
               moderator_config: Optional[ModeratorConfig] = None) -> GroupChat:
        chat_id = uuid.uuid4().hex
        chat_dir = self.chat_dir(chat_id)
        (chat_dir / IMAGES_DIR).mkdir(parents=True, exist_ok=True)
        chat = GroupChat(
            id=chat_id,
            name=name,
            moderator_agent_id=moderator_agent_id,
            log_path=str(chat_dir / LOG_FILE),
            images_dir=str(chat_dir / IMAGES_DIR),
            created_at=time.time(),
            moderator_config=moderator_config or ModeratorConfig(),
        )
        pathlib.Path(chat.log_path).touch()
        self._save(chat)
        logger.info("Created group chat %s (%s)", chat_id, name)
        return chat

    def load(self, chat_id: str) -> Optional[GroupChat]:
        data = read_json(self.chat_dir(chat_id) / METADATA_FILE)
        if not isinstance(data, dict):
            return None
        try:
            return chat_from_dict(data)
        except KeyError as e:
            logger.warning("Group chat %s has incomplete metadata: missing %s", chat_id, e)
            return None

    def require(self, chat_id: str) -> GroupChat:
        chat = self.load(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return chat

    def list_chats(self) -> list[GroupChat]:
        if not self.root.is_dir():
            return []
        chats = []
        for entry in self.root.iterdir():
            if entry.is_dir():
                chat = self.load(entry.name)
                if chat is not None:
                    chats.append(chat)
        return sorted(chats, key=lambda c: c.created_at)

    def update(self, chat_id: str, **changes: Any) -> GroupChat:
        chat = self.require(chat_id)
        allowed = {f.name for f in fields(GroupChat)} - {"id", "log_path", "images_dir", "created_at"}
        for key, value in changes.items():
            if key not in allowed:
                raise TypeError(f"Cannot update group chat field: {key}")
            setattr(chat, key, value)
        self._save(chat)
        return chat

    def delete(self, chat_id: str) -> bool:
        chat_dir = self.chat_dir(chat_id)
        if not chat_dir.exists():
            return False
        shutil.rmtree(chat_dir)
        logger.info("Deleted group chat %s", chat_id)
        return True

    def _save(self, chat: GroupChat) -> None:
        write_json_atomic(self.chat_dir(chat.id) / METADATA_FILE, chat_to_dict(chat))

    # -- participants --------------------------------------------------------

    def add_participant(self, chat_id: str, participant: GroupChatParticipant) -> GroupChat:
        chat = self.require(chat_id)
        if chat.participant(participant.name) is not None:
            raise DuplicateParticipantError(participant.name)
        chat.participants.append(participant)
        self._save(chat)
        return chat

    def remove_participant(self, chat_id: str, name: str) -> GroupChat:
        chat = self.require(chat_id)
        chat.participants = [p for p in chat.participants if p.name != name]
        self._save(chat)
        return chat

    def get_participant(self, chat_id: str, name: str) -> Optional[GroupChatParticipant]:
        return self.require(chat_id).participant(name)

    def update_participant(self, chat_id: str, name: str, **changes: Any) -> GroupChatParticipant:
        chat = self.require(chat_id)
        participant = chat.participant(name)
        if participant is None:
            raise ParticipantNotFoundError(name)
        for key, value in changes.items():
            if not hasattr(participant, key) or key == "name":
                raise TypeError(f"Cannot update participant field: {key}")
            setattr(participant, key, value)
        self._save(chat)
        return participant

    # -- history -------------------------------------------------------------

    def _history(self, chat_id: str) -> HistoryFile:
        return HistoryFile(self.history_path(chat_id))

    def add_history_entry(self, chat_id: str, entry: HistoryEntry) -> HistoryEntry:
        return self._history(chat_id).add(entry)

    def get_history(self, chat_id: str) -> list[HistoryEntry]:
        return self._history(chat_id).entries()

    def delete_history_entry(self, chat_id: str, entry_id: str) -> bool:
        return self._history(chat_id).delete(entry_id)

    def clear_history(self, chat_id: str) -> None:
        self._history(chat_id).clear()
