"""Pure engagement-rate computations.

Nothing in here touches the network: the orchestrator fetches readers,
reactions and thread replies and hands plain collections to these functions.
"""
from collections import Counter
from datetime import timedelta
from typing import Iterable

from pachka_stats.models.schemas import (
    AnalyticsResult, DayStat, Message, MessageStat, PeriodMetrics, Reaction,
    ReactionUsage, UserDirectoryEntry, UserStat
)

MESSAGE_WEIGHT = 1.0
THREAD_MESSAGE_WEIGHT = 0.8
REACTION_WEIGHT = 0.25


def compute_message_er(readers: set[int], reactors: set[int], commenters: set[int]) -> float:
    """Share of readers (0-100%) who also reacted to or commented on a message"""
    if not readers:
        return 0.0
    engaged = reactors | commenters
    engaged_and_read = readers & engaged
    return 100 * len(engaged_and_read) / len(readers)


def build_message_stat(
    message: Message,
    readers: Iterable[int],
    reactions: list[Reaction],
    thread_replies: list[Message],
) -> MessageStat:
    reader_set = set(readers)
    # The author has always read their own message
    if message.user_id:
        reader_set.add(message.user_id)

    reactors = {r.user_id for r in reactions if r.user_id}
    commenters = {m.user_id for m in thread_replies if m.user_id}
    er = compute_message_er(reader_set, reactors, commenters)

    return MessageStat(
        id=message.id,
        chat_id=message.chat_id,
        text=message.content,
        date=message.created_at,
        reader_count=len(reader_set),
        reactor_count=len(reactors),
        thread_commenter_count=len(commenters),
        reaction_count=len(reactions),
        thread_reply_count=len(thread_replies),
        er=round(er, 2),
    )


def mean_engagement_rate(message_stats: list[MessageStat]) -> float:
    """Average ER over messages that somebody read"""
    read = [s.er for s in message_stats if s.reader_count > 0]
    return sum(read) / len(read) if read else 0.0


def aggregate_by_day(message_stats: list[MessageStat]) -> list[DayStat]:
    """Mean ER per calendar day, plus one trailing point that extends the last trend"""
    by_day: dict = {}
    for stat in message_stats:
        by_day.setdefault(stat.date.date(), []).append(stat.er)

    days = [
        DayStat(date=day, er=sum(values) / len(values))
        for day, values in sorted(by_day.items())
    ]

    if days:
        last = days[-1]
        days.append(DayStat(date=last.date + timedelta(days=1), er=last.er))
    return days


def user_score(message_count: int, thread_message_count: int, reaction_count: int) -> float:
    return (
        message_count * MESSAGE_WEIGHT
        + thread_message_count * THREAD_MESSAGE_WEIGHT
        + reaction_count * REACTION_WEIGHT
    )


def rank_users(
    messages: list[Message],
    thread_replies: list[Message],
    reactions: list[Reaction],
    directory: list[UserDirectoryEntry],
    limit: int = 10,
) -> list[UserStat]:
    """Leaderboard of the most active users by composite score.

    Every reaction event counts, even several from one user on one message.
    Unknown users, users without a name and bots are left out of the result.
    """
    counts: dict[int, dict[str, int]] = {}

    def bump(user_id: int, field: str):
        if user_id not in counts:
            counts[user_id] = {"messages": 0, "thread_messages": 0, "reactions": 0}
        counts[user_id][field] += 1

    for message in messages:
        if message.is_top_level and message.user_id:
            bump(message.user_id, "messages")

    for reply in thread_replies:
        if reply.user_id:
            bump(reply.user_id, "thread_messages")

    for reaction in reactions:
        if reaction.user_id:
            bump(reaction.user_id, "reactions")

    users_by_id = {u.id: u for u in directory}
    ranked = []
    for user_id, c in counts.items():
        user = users_by_id.get(user_id)
        if user is None or user.bot or not user.display_name.strip():
            continue
        ranked.append(UserStat(
            user_id=user_id,
            name=user.display_name,
            avatar=user.image_url,
            message_count=c["messages"],
            thread_message_count=c["thread_messages"],
            reaction_count=c["reactions"],
            score=user_score(c["messages"], c["thread_messages"], c["reactions"]),
        ))

    # sort() is stable: equal scores keep their first-seen order
    ranked.sort(key=lambda u: u.score, reverse=True)
    return ranked[:limit]


def count_reactions(reactions: list[Reaction]) -> list[ReactionUsage]:
    counts = Counter(r.code or "👍" for r in reactions)
    return [ReactionUsage(emoji=emoji, count=count) for emoji, count in counts.most_common()]


def percentage_difference(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def compare(current: PeriodMetrics, previous: PeriodMetrics) -> tuple[PeriodMetrics, PeriodMetrics]:
    """Per-metric (percentage, absolute) differences between two periods"""
    percentage = {}
    absolute = {}
    for field in PeriodMetrics.model_fields:
        cur = getattr(current, field)
        prev = getattr(previous, field)
        absolute[field] = cur - prev
        percentage[field] = percentage_difference(cur, prev)
    return PeriodMetrics(**percentage), PeriodMetrics(**absolute)


def period_metrics(result: AnalyticsResult) -> PeriodMetrics:
    stats = result.message_stats
    return PeriodMetrics(
        total_messages=len(stats),
        total_reads=sum(s.reader_count for s in stats),
        total_reactions=sum(s.reaction_count for s in stats),
        messages_with_reactions=sum(1 for s in stats if s.reaction_count > 0),
        total_thread_messages=sum(s.thread_reply_count for s in stats),
        engagement_rate=result.engagement_rate,
    )
