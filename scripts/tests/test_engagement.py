"""Tests for the pure engagement computations."""
from datetime import date
from itertools import product

import pytest

from pachka_stats.models.schemas import AnalyticsResult, MessageStat, PeriodMetrics
from pachka_stats.services.engagement import (
    aggregate_by_day, build_message_stat, compare, compute_message_er,
    count_reactions, mean_engagement_rate, percentage_difference,
    period_metrics, rank_users, user_score
)

from conftest import make_message, make_reaction, make_user


def stat(id: int, created_at: str, er: float, reader_count: int = 1, **extra) -> MessageStat:
    return MessageStat(
        id=id,
        text="",
        date=created_at,
        reader_count=reader_count,
        reactor_count=0,
        thread_commenter_count=0,
        er=er,
        **extra,
    )


class TestComputeMessageER:

    def test_er_stays_within_bounds(self):
        """Every combination of small user sets yields an ER in [0, 100]"""
        pool = [set(), {1}, {1, 2}, {2, 3}, {1, 2, 3, 4}, {5}]
        for readers, reactors, commenters in product(pool, repeat=3):
            er = compute_message_er(readers, reactors, commenters)
            assert 0 <= er <= 100

    def test_empty_readers_give_zero(self):
        assert compute_message_er(set(), {1, 2}, {3}) == 0

    def test_no_engagement_gives_zero(self):
        assert compute_message_er({1, 2, 3}, set(), set()) == 0

    def test_engaged_user_counted_once(self):
        # User 1 both reacted and commented
        assert compute_message_er({1, 2}, {1}, {1}) == 50.0

    def test_non_reader_engagement_is_ignored(self):
        readers = {1, 2, 3, 4}
        base = compute_message_er(readers, {1}, set())
        assert compute_message_er(readers, {1, 99}, set()) == base
        assert compute_message_er(readers, {1}, {98}) == base

    def test_adding_reader_engagement_never_decreases(self):
        readers = {1, 2, 3, 4}
        base = compute_message_er(readers, {1}, set())
        assert compute_message_er(readers, {1, 2}, set()) >= base
        assert compute_message_er(readers, {1}, {3}) >= base
        assert compute_message_er(readers, {1}, {1}) == base


class TestBuildMessageStat:

    def test_author_counts_as_reader(self):
        message = make_message(1, user_id=7)
        result = build_message_stat(message, [], [], [])
        assert result.reader_count == 1
        assert result.er == 0

    def test_no_author_and_no_readers(self):
        message = make_message(1, user_id=None)
        result = build_message_stat(message, [], [make_reaction(2)], [])
        assert result.reader_count == 0
        assert result.er == 0

    def test_reactions_collapse_to_distinct_reactors(self):
        message = make_message(1, user_id=1)
        reactions = [make_reaction(2, "👍"), make_reaction(2, "🔥"), make_reaction(3)]
        replies = [make_message(10, user_id=4), make_message(11, user_id=4)]
        result = build_message_stat(message, [1, 2, 3, 4], reactions, replies)

        assert result.reactor_count == 2
        assert result.reaction_count == 3
        assert result.thread_commenter_count == 1
        assert result.thread_reply_count == 2
        assert result.er == 75.0

    def test_er_is_rounded(self):
        message = make_message(1, user_id=3)
        replies = [make_message(10, user_id=2)]
        result = build_message_stat(message, [1, 2, 3], [], replies)
        assert result.er == 33.33


class TestAggregateByDay:

    def test_groups_by_day_with_trailing_point(self):
        stats = [
            stat(1, "2024-01-02T10:00:00+00:00", 20.0),
            stat(2, "2024-01-01T10:00:00+00:00", 50.0),
            stat(3, "2024-01-01T18:00:00+00:00", 30.0),
        ]
        days = aggregate_by_day(stats)

        assert [d.date for d in days] == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
        assert days[0].er == pytest.approx(40.0)
        assert days[1].er == pytest.approx(20.0)
        assert days[2].er == days[1].er

    def test_zero_reader_messages_count_as_zero(self):
        stats = [
            stat(1, "2024-01-01T10:00:00+00:00", 60.0),
            stat(2, "2024-01-01T11:00:00+00:00", 0.0, reader_count=0),
        ]
        assert aggregate_by_day(stats)[0].er == pytest.approx(30.0)

    def test_empty_input_has_no_trailing_point(self):
        assert aggregate_by_day([]) == []

    def test_repeated_runs_are_identical(self):
        stats = [
            stat(1, "2024-03-05T10:00:00+03:00", 10.0),
            stat(2, "2024-03-07T10:00:00+03:00", 90.0),
        ]
        first = aggregate_by_day(stats)
        second = aggregate_by_day(stats)
        assert first == second
        assert len(first) == 3
        assert first[-1].date == date(2024, 3, 8)

    def test_day_follows_timestamp_timezone(self):
        # 23:30 in UTC+3 stays on the 1st, no conversion to UTC
        stats = [stat(1, "2024-01-01T23:30:00+03:00", 10.0)]
        assert aggregate_by_day(stats)[0].date == date(2024, 1, 1)


def test_mean_engagement_rate_skips_unread_messages():
    stats = [
        stat(1, "2024-01-01T10:00:00+00:00", 50.0),
        stat(2, "2024-01-01T10:00:00+00:00", 0.0, reader_count=0),
    ]
    assert mean_engagement_rate(stats) == 50.0
    assert mean_engagement_rate([]) == 0.0


class TestRankUsers:

    def test_score_formula(self):
        assert user_score(3, 2, 4) == pytest.approx(5.6)

    def test_counts_each_source(self):
        messages = [make_message(i, user_id=1) for i in range(3)]
        replies = [make_message(10, user_id=1), make_message(11, user_id=1)]
        reactions = [make_reaction(1) for _ in range(4)]
        users = rank_users(messages, replies, reactions, [make_user(1, "Ann", "Lee")])

        assert len(users) == 1
        top = users[0]
        assert top.name == "Ann Lee"
        assert (top.message_count, top.thread_message_count, top.reaction_count) == (3, 2, 4)
        assert top.score == pytest.approx(5.6)

    def test_top_ten_sorted_descending(self):
        messages = []
        for user_id in range(1, 16):
            messages += [make_message(user_id * 100 + n, user_id=user_id) for n in range(user_id)]
        directory = [make_user(i, f"User {i}") for i in range(1, 16)]

        users = rank_users(messages, [], [], directory)

        assert len(users) == 10
        assert [u.user_id for u in users] == list(range(15, 5, -1))
        scores = [u.score for u in users]
        assert scores == sorted(scores, reverse=True)

    def test_ties_keep_fold_order(self):
        messages = [make_message(1, user_id=5), make_message(2, user_id=3), make_message(3, user_id=9)]
        directory = [make_user(3, "C"), make_user(5, "E"), make_user(9, "I")]
        users = rank_users(messages, [], [], directory)
        assert [u.user_id for u in users] == [5, 3, 9]

    def test_bots_unknown_and_nameless_users_dropped(self):
        messages = [make_message(1, user_id=1), make_message(2, user_id=2),
                    make_message(3, user_id=3), make_message(4, user_id=4)]
        directory = [make_user(1, "Ann"), make_user(2, "Robo", bot=True), make_user(3, "", "")]
        users = rank_users(messages, [], [], directory)
        assert [u.user_id for u in users] == [1]

    def test_thread_replies_in_listing_do_not_count_as_messages(self):
        messages = [make_message(1, user_id=1, is_thread_reply=True)]
        assert rank_users(messages, [], [], [make_user(1, "Ann")]) == []

    def test_reactions_counted_per_event(self):
        reactions = [make_reaction(1, "👍"), make_reaction(1, "🔥")]
        users = rank_users([], [], reactions, [make_user(1, "Ann")])
        assert users[0].reaction_count == 2
        assert users[0].score == pytest.approx(0.5)


def test_count_reactions_orders_by_frequency():
    reactions = [make_reaction(1, "🔥"), make_reaction(2, "👍"), make_reaction(3, "🔥"), make_reaction(4, "")]
    usage = count_reactions(reactions)
    assert usage[0].emoji == "🔥"
    assert usage[0].count == 2
    assert {u.emoji for u in usage} == {"🔥", "👍"}
    assert sum(u.count for u in usage) == 4


class TestCompare:

    def test_zero_previous(self):
        assert percentage_difference(10, 0) == 100
        assert percentage_difference(0, 0) == 0

    def test_regular_change(self):
        assert percentage_difference(15, 10) == pytest.approx(50.0)
        assert percentage_difference(5, 10) == pytest.approx(-50.0)

    def test_every_metric_compared_independently(self):
        current = PeriodMetrics(total_messages=10, total_reads=40, total_reactions=0,
                                messages_with_reactions=2, total_thread_messages=3, engagement_rate=25.0)
        previous = PeriodMetrics(total_messages=5, total_reads=0, total_reactions=0,
                                 messages_with_reactions=4, total_thread_messages=3, engagement_rate=20.0)
        percentage, absolute = compare(current, previous)

        assert percentage.total_messages == pytest.approx(100.0)
        assert percentage.total_reads == 100
        assert percentage.total_reactions == 0
        assert percentage.messages_with_reactions == pytest.approx(-50.0)
        assert percentage.total_thread_messages == 0
        assert percentage.engagement_rate == pytest.approx(25.0)
        assert absolute.total_messages == 5
        assert absolute.total_reads == 40
        assert absolute.messages_with_reactions == -2
        assert absolute.engagement_rate == pytest.approx(5.0)


def test_period_metrics_from_result():
    result = AnalyticsResult(
        engagement_rate=12.5,
        message_stats=[
            stat(1, "2024-01-01T10:00:00+00:00", 10.0, reader_count=4, reaction_count=3, thread_reply_count=1),
            stat(2, "2024-01-01T11:00:00+00:00", 15.0, reader_count=6, reaction_count=0, thread_reply_count=2),
        ],
    )
    metrics = period_metrics(result)
    assert metrics.total_messages == 2
    assert metrics.total_reads == 10
    assert metrics.total_reactions == 3
    assert metrics.messages_with_reactions == 1
    assert metrics.total_thread_messages == 3
    assert metrics.engagement_rate == 12.5
