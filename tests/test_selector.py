"""Tests for channel and key selection."""
import random

import pytest

from msgrelay.config.schema import LoadBalanceStrategy
from msgrelay.core.errors import NoChannelConfigured, NoKeyAvailable
from msgrelay.core.selector import UpstreamSelector

from conftest import make_channel, make_registry


@pytest.fixture
def channel():
    return make_channel(api_keys=["A", "B", "C"])


def test_round_robin_is_deterministic(channel, tracker):
    """Six consecutive selections cycle through the keys twice."""
    selector = UpstreamSelector(make_registry(channel), tracker)

    selected = [selector.select_key(channel) for _ in range(6)]

    assert selected == ["A", "B", "C", "A", "B", "C"]
    assert selector.request_counter == 6


def test_round_robin_skips_failed_key(channel, tracker):
    """While B is failed only A and C are handed out."""
    selector = UpstreamSelector(make_registry(channel), tracker)
    tracker.mark_failed("B")

    selected = [selector.select_key(channel) for _ in range(4)]

    assert selected == ["A", "C", "A", "C"]


def test_failed_key_returns_after_recovery(channel, tracker, clock):
    selector = UpstreamSelector(make_registry(channel), tracker)
    tracker.mark_failed("B")
    clock.advance(300.0)

    selected = [selector.select_key(channel) for _ in range(3)]

    assert selected == ["A", "B", "C"]


def test_excluded_keys_are_skipped(channel, tracker):
    selector = UpstreamSelector(make_registry(channel), tracker)

    selected = [selector.select_key(channel, excluded_keys={"A"}) for _ in range(4)]

    assert selected == ["B", "C", "B", "C"]


def test_failover_always_first_available(channel, tracker):
    """Failover respects configured order and never auto-advances."""
    selector = UpstreamSelector(make_registry(channel, load_balance=LoadBalanceStrategy.FAILOVER), tracker)

    assert [selector.select_key(channel) for _ in range(3)] == ["A", "A", "A"]

    tracker.mark_failed("A")
    assert selector.select_key(channel) == "B"


def test_random_picks_among_available(channel, tracker):
    selector = UpstreamSelector(
        make_registry(channel, load_balance=LoadBalanceStrategy.RANDOM),
        tracker,
        rng=random.Random(42),
    )
    tracker.mark_failed("B")

    selected = {selector.select_key(channel) for _ in range(50)}

    assert selected == {"A", "C"}


def test_strategy_override(channel, tracker):
    selector = UpstreamSelector(make_registry(channel), tracker)

    assert selector.select_key(channel, strategy=LoadBalanceStrategy.FAILOVER) == "A"
    assert selector.select_key(channel, strategy=LoadBalanceStrategy.FAILOVER) == "A"
    # Counter still advanced by the failover selections
    assert selector.request_counter == 2


def test_all_failed_falls_back_to_oldest_failed(channel, tracker, clock):
    """Policy decision pending confirmation: when every key is failed or
    excluded, the least recently failed key is retried instead of failing.
    """
    selector = UpstreamSelector(make_registry(channel), tracker)
    tracker.mark_failed("B")
    clock.advance(5.0)
    tracker.mark_failed("A")
    clock.advance(5.0)
    tracker.mark_failed("C")

    assert selector.select_key(channel) == "B"
    assert selector.select_key(channel, excluded_keys={"B"}) == "A"


def test_all_excluded_raises(channel, tracker):
    selector = UpstreamSelector(make_registry(channel), tracker)

    with pytest.raises(NoKeyAvailable):
        selector.select_key(channel, excluded_keys={"A", "B", "C"})


def test_excluded_and_unfailed_raises(channel, tracker):
    """Excluded keys that never failed are not fallback candidates."""
    selector = UpstreamSelector(make_registry(channel), tracker)
    tracker.mark_failed("C")

    with pytest.raises(NoKeyAvailable):
        selector.select_key(channel, excluded_keys={"A", "B", "C"})


def test_select_channel_returns_current(channel, tracker):
    selector = UpstreamSelector(make_registry(channel), tracker)
    assert selector.select_channel() is channel


def test_select_channel_without_config(tracker):
    selector = UpstreamSelector(make_registry(), tracker)

    with pytest.raises(NoChannelConfigured):
        selector.select_channel()


def test_select_channel_without_keys(tracker):
    empty = make_channel(api_keys=[])
    selector = UpstreamSelector(make_registry(empty), tracker)

    with pytest.raises(NoChannelConfigured):
        selector.select_channel()
