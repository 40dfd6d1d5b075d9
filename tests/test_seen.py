"""Tests for the bounded seen-request set."""

import pytest

from feedback_relay.poller.seen import SeenRequests


def test_add_and_contains():
    seen = SeenRequests()
    seen.add("req_1")
    assert "req_1" in seen
    assert "req_2" not in seen
    assert len(seen) == 1


def test_overflow_trims_to_most_recent():
    """Exceeding capacity keeps only the `retain` newest ids."""
    seen = SeenRequests(capacity=4, retain=2)
    for request_id in ["a", "b", "c", "d"]:
        seen.add(request_id)
    assert len(seen) == 4

    seen.add("e")
    assert list(seen) == ["d", "e"]
    assert "a" not in seen


def test_readd_refreshes_recency():
    seen = SeenRequests(capacity=3, retain=2)
    for request_id in ["a", "b", "c"]:
        seen.add(request_id)
    seen.add("a")
    seen.add("d")
    assert list(seen) == ["a", "d"]


def test_default_bounds():
    seen = SeenRequests()
    for i in range(101):
        seen.add(f"req_{i}")
    assert len(seen) == 50
    assert "req_100" in seen
    assert "req_50" not in seen


def test_retain_must_be_below_capacity():
    with pytest.raises(ValueError):
        SeenRequests(capacity=5, retain=5)


def test_clear():
    seen = SeenRequests()
    seen.add("a")
    seen.clear()
    assert len(seen) == 0
