"""Shared transcript log for group chats.

One JSON object per line: ``{"timestamp", "from", "content"[, "readOnly"]}``.
Appends to the same path are serialized so entries never interleave.
"""

import asyncio
import json
import logging
import os
import pathlib
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from agentrelay.events import GroupChatMessage

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.-]+")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def message_to_dict(message: GroupChatMessage) -> dict:
    data = {"timestamp": message.timestamp, "from": message.sender, "content": message.content}
    if message.read_only is not None:
        data["readOnly"] = message.read_only
    return data


def message_from_dict(data: dict) -> GroupChatMessage:
    return GroupChatMessage(
        timestamp=str(data["timestamp"]),
        sender=str(data["from"]),
        content=str(data["content"]),
        read_only=data.get("readOnly"),
    )


class ChatLog:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, path: pathlib.Path) -> asyncio.Lock:
        key = str(path.resolve())
        return self._locks.setdefault(key, asyncio.Lock())

    async def append(self, path: "os.PathLike | str", from_: str, content: str,
                     read_only: Optional[bool] = None) -> GroupChatMessage:
        path = pathlib.Path(path)
        message = GroupChatMessage(utc_timestamp(), from_, content, read_only)
        line = json.dumps(message_to_dict(message)) + "\n"
        async with self._lock(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
        logger.debug("Logged %d chars from %s to %s", len(content), from_, path.name)
        return message

    async def read(self, path: "os.PathLike | str") -> list[GroupChatMessage]:
        path = pathlib.Path(path)
        async with self._lock(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    lines = f.readlines()
            except FileNotFoundError:
                return []

        messages = []
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                messages.append(message_from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Skipping corrupt transcript line %d in %s", lineno, path)
        return messages


def sanitize_filename(filename: str) -> str:
    name = _UNSAFE_CHARS.sub("_", os.path.basename(filename or "")).strip("._")
    return name or "image"


def save_image(images_dir: "os.PathLike | str", data: bytes, filename: str) -> str:
    """Store image bytes under a unique, sanitized name; returns that name."""
    images_dir = pathlib.Path(images_dir)
    images_dir.mkdir(parents=True, exist_ok=True)
    saved = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{sanitize_filename(filename)}"
    with open(images_dir / saved, "wb") as f:
        f.write(data)
    return saved
