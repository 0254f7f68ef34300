import asyncio
import logging
from datetime import datetime, time
from typing import Any, Callable, TypeVar

import bleach
import httpx
from pydantic import ValidationError

from pachka_stats.config import Settings, get_settings
from pachka_stats.models.schemas import (
    Chat, CurrentUser, DateRange, Message, Reaction, UserDirectoryEntry
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Raised by the parse_* helpers on records missing or mistyping a field
MALFORMED_RECORD_ERRORS = (ValidationError, AttributeError, KeyError, TypeError, ValueError)

# Strip all HTML from message text
ALLOWED_TAGS: list[str] = []
ALLOWED_ATTRIBUTES: dict[str, list[str]] = {}
MAX_TEXT_LENGTH = 4000


class PachkaError(Exception):
    """Base error for Pachka API calls"""


class PachkaUnavailableError(PachkaError):
    """Pachka could not be reached or answered with something other than JSON"""


class PachkaAPIError(PachkaError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def sanitize_text(content: str) -> str:
    """Sanitize message content to prevent XSS"""
    cleaned = bleach.clean(content, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)
    return cleaned[:MAX_TEXT_LENGTH]


def parse_message(data: dict[str, Any]) -> Message:
    thread = data.get("thread") or {}
    return Message(
        id=int(data["id"]),
        chat_id=data.get("chat_id"),
        user_id=data.get("user_id") or None,
        created_at=data.get("created_at") or data.get("createdAt"),
        content=sanitize_text(data.get("content") or ""),
        thread_chat_id=thread.get("chat_id"),
        is_thread_reply=data.get("entity_type") == "thread",
        parent_message_id=data.get("parent_message_id"),
    )


def parse_reaction(data: dict[str, Any]) -> Reaction:
    return Reaction(
        user_id=data.get("user_id") or None,
        code=data.get("code") or "",
        created_at=data.get("created_at"),
    )


def parse_user(data: dict[str, Any]) -> UserDirectoryEntry:
    return UserDirectoryEntry(
        id=int(data["id"]),
        first_name=bleach.clean(data.get("first_name") or "", tags=ALLOWED_TAGS, strip=True),
        last_name=bleach.clean(data.get("last_name") or "", tags=ALLOWED_TAGS, strip=True),
        image_url=data.get("image_url"),
        bot=bool(data.get("bot", False)),
    )


def parse_chat(data: dict[str, Any]) -> Chat:
    return Chat(
        id=int(data["id"]),
        name=bleach.clean(data.get("name") or "", tags=ALLOWED_TAGS, strip=True),
        channel=bool(data.get("channel", False)),
        public=bool(data.get("public", False)),
        member_ids=data.get("member_ids") or [],
        owner_id=data.get("owner_id"),
        created_at=data.get("created_at"),
        last_message_at=data.get("last_message_at"),
    )


def parse_records(records: list, parser: Callable[[Any], T], what: str) -> list[T]:
    """Parse a listing, skipping records that do not have the expected shape"""
    parsed: list[T] = []
    for raw in records:
        try:
            parsed.append(parser(raw))
        except MALFORMED_RECORD_ERRORS as e:
            logger.warning(f"Skipping malformed {what} record {raw!r}: {e}")
    return parsed


def parse_reader_id(raw: Any) -> int:
    return int(raw)


def day_bounds(date_range: DateRange, tzinfo=None) -> tuple[datetime, datetime]:
    """Inclusive [from 00:00:00, to 23:59:59.999999] in the given timezone"""
    start = datetime.combine(date_range.from_date, time.min, tzinfo=tzinfo)
    end = datetime.combine(date_range.end, time.max, tzinfo=tzinfo)
    return start, end


class PachkaClient:
    """Async client for the Pachka REST API.

    The token is passed in explicitly; the underlying connection pool may be
    shared between clients. All requests made through one client share a
    semaphore so a large fan-out never opens more than
    ``max_concurrent_requests`` simultaneous connections.
    """

    def __init__(
        self,
        token: str,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._token = token
        self._http = http_client
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_requests)
        self.base_url = self._settings.pachka_api_url

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _get(self, path: str, params: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        async with self._semaphore:
            try:
                response = await self._http.get(url, params=params, headers=self._headers)
            except httpx.TimeoutException as e:
                raise PachkaUnavailableError(f"Timeout requesting {path}") from e
            except httpx.HTTPError as e:
                raise PachkaUnavailableError(f"Could not connect to Pachka: {e}") from e

        if response.status_code >= 500:
            raise PachkaUnavailableError(f"Pachka server error ({response.status_code}) on {path}")

        content_type = response.headers.get("content-type", "")
        try:
            payload = response.json()
        except ValueError as e:
            # Proxies and captive portals answer with HTML pages
            raise PachkaUnavailableError(
                f"Unexpected response format from Pachka ({content_type or 'no content type'})"
            ) from e

        if response.status_code >= 400:
            message = f"Pachka request failed ({response.status_code})"
            if isinstance(payload, dict) and payload.get("errors"):
                message = payload["errors"][0].get("message") or message
            raise PachkaAPIError(response.status_code, message)

        if not isinstance(payload, dict):
            raise PachkaUnavailableError(f"Unexpected response body on {path}")
        return payload

    async def _get_pages(self, path: str, per: int, params: dict | None = None) -> list[dict]:
        """Collect every page of a simple paginated listing"""
        items: list[dict] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per": per, "page": page})
            result = await self._get(path, query)
            page_items = result.get("data") or []
            items.extend(page_items)
            if len(page_items) < per:
                break
            page += 1
        return items

    async def list_messages(self, chat_id: int, date_range: DateRange | None = None) -> list[Message]:
        """Messages of one chat, newest first, limited to the date range"""
        per = self._settings.messages_page_size
        messages: list[Message] = []
        page = 1

        while True:
            result = await self._get("/messages", {
                "chat_id": chat_id,
                "per": per,
                "page": page,
                "sort[id]": "desc",
            })
            page_messages = result.get("data") or []
            total = (result.get("meta") or {}).get("total")
            if not page_messages:
                break

            reached_older = False
            for message in parse_records(page_messages, parse_message, "message"):
                if date_range is None:
                    messages.append(message)
                    continue
                start, end = day_bounds(date_range, message.created_at.tzinfo)
                if message.created_at < start:
                    # Pages are sorted newest first: everything after is older too
                    reached_older = True
                    break
                if message.created_at <= end:
                    messages.append(message)

            if reached_older or len(page_messages) < per:
                break
            if total and page * per >= total:
                break
            page += 1

        logger.info(f"Loaded {len(messages)} messages for chat {chat_id} in {page} page(s)")
        return messages

    async def get_thread_messages(self, thread_chat_id: int, date_range: DateRange | None = None) -> list[Message]:
        return await self.list_messages(thread_chat_id, date_range)

    async def get_readers(self, message_id: int) -> list[int]:
        raw_ids = await self._get_pages(
            f"/messages/{message_id}/read_member_ids", self._settings.readers_page_size
        )
        return parse_records(raw_ids, parse_reader_id, "reader")

    async def get_reactions(self, message_id: int) -> list[Reaction]:
        raw_reactions = await self._get_pages(
            f"/messages/{message_id}/reactions", self._settings.reactions_page_size
        )
        return parse_records(raw_reactions, parse_reaction, "reaction")

    async def get_message(self, message_id: int) -> Message:
        result = await self._get(f"/messages/{message_id}")
        if not result.get("data"):
            raise PachkaAPIError(404, f"Message {message_id} not found")
        try:
            return parse_message(result["data"])
        except MALFORMED_RECORD_ERRORS as e:
            raise PachkaAPIError(502, f"Malformed message {message_id} from Pachka: {e}") from e

    async def list_users(self) -> list[UserDirectoryEntry]:
        raw_users = await self._get_pages("/users", self._settings.users_page_size)
        logger.info(f"Loaded user directory: {len(raw_users)} users")
        return parse_records(raw_users, parse_user, "user")

    async def list_chats(self, channel: bool | None = None, public: bool | None = None) -> list[Chat]:
        raw_chats = await self._get_pages("/chats", self._settings.chats_page_size)
        chats = parse_records(raw_chats, parse_chat, "chat")
        if channel is not None:
            chats = [c for c in chats if c.channel == channel]
        if public is not None:
            chats = [c for c in chats if c.public == public]
        return chats

    async def get_chat(self, chat_id: int) -> Chat:
        try:
            result = await self._get(f"/chats/{chat_id}")
            if result.get("data"):
                return parse_chat(result["data"])
        except PachkaAPIError as e:
            logger.info(f"Direct lookup of chat {chat_id} failed ({e.status_code}), scanning chat list")
        except MALFORMED_RECORD_ERRORS as e:
            logger.warning(f"Malformed chat {chat_id} from direct lookup, scanning chat list: {e}")

        for chat in await self.list_chats():
            if chat.id == chat_id:
                return chat
        raise PachkaAPIError(404, f"Chat {chat_id} not found")

    async def get_current_user(self) -> CurrentUser:
        """Profile of the token owner; doubles as token validation"""
        result = await self._get("/profile")
        data = result.get("data")
        if not data:
            raise PachkaAPIError(404, "Profile not found")
        try:
            return CurrentUser(
                id=int(data["id"]),
                first_name=data.get("first_name") or "",
                last_name=data.get("last_name") or "",
                email=data.get("email"),
                role=data.get("role"),
                image_url=data.get("image_url"),
            )
        except MALFORMED_RECORD_ERRORS as e:
            raise PachkaAPIError(502, f"Malformed profile from Pachka: {e}") from e
