import asyncio
import logging
import re
from datetime import timedelta
from typing import Callable

from pachka_stats.client import PachkaAPIError, PachkaClient, PachkaError, PachkaUnavailableError
from pachka_stats.config import Settings, get_settings
from pachka_stats.models.schemas import (
    AnalyticsResult, ComparisonResult, DateRange, Message, MessageStat, Reaction,
    UserDirectoryEntry
)
from pachka_stats.services.engagement import (
    aggregate_by_day, build_message_stat, compare, count_reactions,
    mean_engagement_rate, period_metrics, rank_users
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class ProgressReporter:
    """Forwards progress to a callback, never letting it go backwards"""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self.value = 0

    def report(self, value: float):
        value = min(100, max(self.value, round(value)))
        self.value = value
        if self._callback:
            self._callback(value)


async def _no_replies() -> list[Message]:
    return []


def _or_empty(result, what: str, message_id: int) -> list:
    if isinstance(result, PachkaError):
        logger.warning(f"Could not load {what} for message {message_id}: {result}")
        return []
    if isinstance(result, BaseException):
        raise result
    return result


async def fetch_engagement(
    client: PachkaClient, message: Message
) -> tuple[list[int], list[Reaction], list[Message]]:
    """Readers, reactions and thread replies of one message.

    The three requests run concurrently and each failure degrades to an
    empty collection for that request only.
    """
    replies = (
        client.get_thread_messages(message.thread_chat_id)
        if message.thread_chat_id else _no_replies()
    )
    readers, reactions, thread_replies = await asyncio.gather(
        client.get_readers(message.id),
        client.get_reactions(message.id),
        replies,
        return_exceptions=True,
    )
    return (
        _or_empty(readers, "readers", message.id),
        _or_empty(reactions, "reactions", message.id),
        _or_empty(thread_replies, "thread replies", message.id),
    )


async def load_messages(
    client: PachkaClient, chat_ids: list[int], date_range: DateRange | None
) -> list[Message]:
    results = await asyncio.gather(
        *(client.list_messages(chat_id, date_range) for chat_id in chat_ids),
        return_exceptions=True,
    )
    messages: list[Message] = []
    for chat_id, result in zip(chat_ids, results):
        if isinstance(result, PachkaUnavailableError):
            logger.error(f"Pachka unavailable while listing chat {chat_id}: {result}")
            raise result
        if isinstance(result, PachkaAPIError):
            logger.warning(f"Skipping chat {chat_id}: {result.message}")
            continue
        if isinstance(result, BaseException):
            raise result
        messages.extend(result)
    return messages


async def load_directory(client: PachkaClient) -> list[UserDirectoryEntry]:
    try:
        return await client.list_users()
    except PachkaError as e:
        logger.warning(f"User directory unavailable, continuing without it: {e}")
        return []


def filter_messages(
    messages: list[Message],
    directory: list[UserDirectoryEntry],
    system_patterns: list[str],
) -> list[Message]:
    """Drop platform notices and anything written by bots"""
    bot_ids = {u.id for u in directory if u.bot}
    patterns = [re.compile(p, re.IGNORECASE) for p in system_patterns]

    def keep(message: Message) -> bool:
        content = message.content.strip()
        if any(p.match(content) for p in patterns):
            return False
        return not (message.user_id and message.user_id in bot_ids)

    return [m for m in messages if keep(m)]


def previous_period(date_range: DateRange) -> DateRange:
    """The equally long period that ends the day before ``date_range`` starts"""
    length = (date_range.end - date_range.from_date).days
    to_date = date_range.from_date - timedelta(days=1)
    return DateRange(from_date=to_date - timedelta(days=length), to_date=to_date)


async def run_analytics(
    client: PachkaClient,
    chat_ids: list[int],
    date_range: DateRange | None = None,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> AnalyticsResult:
    """Engagement analytics for a set of chats over a date range.

    Raises PachkaUnavailableError when the chat platform cannot be reached
    for the message listing; every other failure only degrades the data.
    """
    settings = settings or get_settings()
    progress = ProgressReporter(on_progress)

    logger.info(f"Analytics state: FetchingMessages (chats={chat_ids})")
    progress.report(5)
    messages = await load_messages(client, chat_ids, date_range)
    directory = await load_directory(client)
    messages = filter_messages(messages, directory, settings.system_message_patterns)
    progress.report(40)

    top_level = sorted((m for m in messages if m.is_top_level), key=lambda m: m.created_at)
    if not top_level:
        logger.info("No messages left after filtering, returning empty analytics")
        progress.report(100)
        return AnalyticsResult(chat_ids=chat_ids, date_range=date_range)

    by_day: dict = {}
    for message in top_level:
        by_day.setdefault(message.created_at.date(), []).append(message)

    logger.info(
        f"Analytics state: FetchingPerMessageData ({len(top_level)} messages over {len(by_day)} days)"
    )
    stats: list[MessageStat] = []
    reactions: list[Reaction] = []
    thread_replies: list[Message] = []
    seen_threads: set[int] = set()

    for index, day in enumerate(sorted(by_day)):
        day_messages = by_day[day]
        fetched = await asyncio.gather(*(fetch_engagement(client, m) for m in day_messages))
        for message, (readers, message_reactions, replies) in zip(day_messages, fetched):
            stats.append(build_message_stat(message, readers, message_reactions, replies))
            reactions.extend(message_reactions)
            if message.thread_chat_id and message.thread_chat_id not in seen_threads:
                seen_threads.add(message.thread_chat_id)
                thread_replies.extend(replies)
        progress.report(40 + (index + 1) / len(by_day) * 59)

    logger.info("Analytics state: Aggregating")
    result = AnalyticsResult(
        engagement_rate=mean_engagement_rate(stats),
        message_stats=stats,
        days_stats=aggregate_by_day(stats),
        top_users=rank_users(top_level, thread_replies, reactions, directory, settings.top_users_limit),
        top_reactions=count_reactions(reactions),
        chat_ids=chat_ids,
        date_range=date_range,
    )
    logger.info(f"Analytics state: Done (ER {result.engagement_rate:.2f}% over {len(stats)} messages)")
    progress.report(100)
    return result


async def run_analytics_for_messages(client: PachkaClient, message_ids: list[int]) -> AnalyticsResult:
    """ER for an ad hoc list of messages, without day or user aggregation"""
    results = await asyncio.gather(
        *(client.get_message(message_id) for message_id in message_ids),
        return_exceptions=True,
    )
    messages: list[Message] = []
    for message_id, result in zip(message_ids, results):
        if isinstance(result, PachkaAPIError):
            logger.warning(f"Skipping message {message_id}: {result.message}")
            continue
        if isinstance(result, BaseException):
            raise result
        messages.append(result)

    if not messages:
        return AnalyticsResult()

    fetched = await asyncio.gather(*(fetch_engagement(client, m) for m in messages))
    stats = []
    reactions: list[Reaction] = []
    for message, (readers, message_reactions, replies) in zip(messages, fetched):
        stats.append(build_message_stat(message, readers, message_reactions, replies))
        reactions.extend(message_reactions)

    chat_ids = list(dict.fromkeys(m.chat_id for m in messages if m.chat_id))
    return AnalyticsResult(
        engagement_rate=sum(s.er for s in stats) / len(stats),
        message_stats=stats,
        top_reactions=count_reactions(reactions),
        chat_ids=chat_ids,
    )


async def run_comparison(
    client: PachkaClient,
    current: AnalyticsResult,
    comparison_range: DateRange | None = None,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> AnalyticsResult:
    """Re-run the analytics of ``current`` over another period and attach the deltas"""
    if not current.chat_ids:
        raise ValueError("Current analytics has no chats to compare")
    if comparison_range is None:
        if current.date_range is None:
            raise ValueError("A comparison period is required when the current one is unbounded")
        comparison_range = previous_period(current.date_range)

    previous = await run_analytics(client, current.chat_ids, comparison_range, on_progress, settings)
    previous_metrics = period_metrics(previous)
    percentage, absolute = compare(period_metrics(current), previous_metrics)

    return current.model_copy(update={"comparison": ComparisonResult(
        date_range=comparison_range,
        metrics=previous_metrics,
        percentage_differences=percentage,
        absolute_differences=absolute,
    )})
