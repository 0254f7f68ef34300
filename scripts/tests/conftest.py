"""Shared fixtures: an in-memory stand-in for the Pachka client."""
from datetime import datetime

import pytest

from pachka_stats.client import PachkaAPIError, PachkaUnavailableError, day_bounds
from pachka_stats.config import Settings
from pachka_stats.models.schemas import Chat, Message, Reaction, UserDirectoryEntry


def make_message(
    id: int,
    user_id: int | None = None,
    created_at: str = "2024-01-01T09:00:00+00:00",
    chat_id: int = 1,
    content: str = "hello",
    thread_chat_id: int | None = None,
    is_thread_reply: bool = False,
) -> Message:
    return Message(
        id=id,
        chat_id=chat_id,
        user_id=user_id,
        created_at=datetime.fromisoformat(created_at),
        content=content,
        thread_chat_id=thread_chat_id,
        is_thread_reply=is_thread_reply,
    )


def make_reaction(user_id: int, code: str = "👍") -> Reaction:
    return Reaction(user_id=user_id, code=code)


def make_user(id: int, first_name: str = "User", last_name: str = "", bot: bool = False) -> UserDirectoryEntry:
    return UserDirectoryEntry(id=id, first_name=first_name, last_name=last_name, bot=bot)


class FakePachkaClient:
    """Implements the query surface of PachkaClient over plain dicts"""

    def __init__(self):
        self.chats: dict[int, list[Message]] = {}
        self.readers: dict[int, list[int]] = {}
        self.reactions: dict[int, list[Reaction]] = {}
        self.threads: dict[int, list[Message]] = {}
        self.users: list[UserDirectoryEntry] = []
        self.chat_records: dict[int, Chat] = {}
        self.failing_readers: set[int] = set()
        self.failing_reactions: set[int] = set()
        self.missing_chats: set[int] = set()
        self.unavailable = False
        self.calls: list[tuple] = []

    async def list_messages(self, chat_id, date_range=None):
        self.calls.append(("list_messages", chat_id))
        if self.unavailable:
            raise PachkaUnavailableError("connection refused")
        if chat_id in self.missing_chats:
            raise PachkaAPIError(404, f"Chat {chat_id} not found")
        messages = self.chats.get(chat_id, [])
        if date_range is None:
            return list(messages)
        kept = []
        for m in messages:
            start, end = day_bounds(date_range, m.created_at.tzinfo)
            if start <= m.created_at <= end:
                kept.append(m)
        return kept

    async def get_thread_messages(self, thread_chat_id, date_range=None):
        self.calls.append(("get_thread_messages", thread_chat_id))
        return list(self.threads.get(thread_chat_id, []))

    async def get_readers(self, message_id):
        self.calls.append(("get_readers", message_id))
        if message_id in self.failing_readers:
            raise PachkaUnavailableError("timeout")
        return list(self.readers.get(message_id, []))

    async def get_reactions(self, message_id):
        self.calls.append(("get_reactions", message_id))
        if message_id in self.failing_reactions:
            raise PachkaAPIError(500, "boom")
        return list(self.reactions.get(message_id, []))

    async def list_users(self):
        self.calls.append(("list_users",))
        return list(self.users)

    async def get_message(self, message_id):
        self.calls.append(("get_message", message_id))
        for messages in self.chats.values():
            for m in messages:
                if m.id == message_id:
                    return m
        raise PachkaAPIError(404, f"Message {message_id} not found")

    async def get_chat(self, chat_id):
        if chat_id not in self.chat_records:
            raise PachkaAPIError(404, f"Chat {chat_id} not found")
        return self.chat_records[chat_id]

    async def list_chats(self, channel=None, public=None):
        chats = list(self.chat_records.values())
        if channel is not None:
            chats = [c for c in chats if c.channel == channel]
        if public is not None:
            chats = [c for c in chats if c.public == public]
        return chats


@pytest.fixture
def fake_client():
    return FakePachkaClient()


@pytest.fixture
def settings():
    return Settings(_env_file=None)
