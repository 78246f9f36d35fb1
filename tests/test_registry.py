from __future__ import annotations

from datetime import datetime, timedelta, timezone

from Utils.registry import SessionRegistry

START = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_start_is_idempotent():
    registry = SessionRegistry()
    first, created = registry.start("g", "u", "c1", START)
    second, created_again = registry.start("g", "u", "c2", START + timedelta(seconds=30))

    assert created is True
    assert created_again is False
    assert second is first
    assert first.channel_id == "c1"
    assert first.started_at == START
    assert len(registry) == 1


def test_stop_returns_interval_and_forgets_session():
    registry = SessionRegistry()
    registry.start("g", "u", "c1", START)

    interval = registry.stop("g", "u", START + timedelta(seconds=90))

    assert interval.duration_ms == 90_000
    assert interval.channel_id == "c1"
    assert registry.get("g", "u") is None
    assert registry.has_any("g") is False
    assert registry.guild_ids() == []


def test_stop_untracked_user_returns_none():
    registry = SessionRegistry()
    assert registry.stop("g", "nobody", START) is None


def test_restart_clock_and_move_keep_one_session():
    registry = SessionRegistry()
    registry.start("g", "u", "c1", START)
    later = START + timedelta(minutes=5)

    registry.restart_clock("g", "u", later)
    registry.move("g", "u", "c2")

    session = registry.get("g", "u")
    assert session.started_at == later
    assert session.channel_id == "c2"
    assert registry.restart_clock("g", "missing", later) is None


def test_list_active_is_per_guild():
    registry = SessionRegistry()
    registry.start("g1", "a", "c", START)
    registry.start("g1", "b", "c", START)
    registry.start("g2", "a", "c", START)

    assert sorted(s.user_id for s in registry.list_active("g1")) == ["a", "b"]
    assert [s.guild_id for s in registry.list_active("g2")] == ["g2"]
    assert sorted(s.key for s in registry) == [("g1", "a"), ("g1", "b"), ("g2", "a")]
