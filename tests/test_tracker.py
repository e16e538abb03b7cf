"""Tests for the lifecycle state map."""

import pytest

from faceblur.errors import InvalidTransitionError
from faceblur.tracker import UNDISCOVERED, ImageState, LifecycleTracker


@pytest.fixture
def tracker():
    return LifecycleTracker()


def test_unknown_image_is_undiscovered(tracker):
    assert "img_1" not in tracker
    assert tracker.state("img_1") is None
    assert tracker.state_name("img_1") == UNDISCOVERED


def test_full_path_to_processed(tracker):
    tracker.mark_queued("img_1")
    tracker.mark_processing("img_1")
    tracker.mark_processed("img_1", suppressed=True)

    assert tracker.state("img_1") == ImageState.PROCESSED
    assert tracker.is_suppressed("img_1")
    assert tracker.is_settled("img_1")


def test_discovery_can_settle_directly(tracker):
    tracker.mark_processed("small")
    tracker.mark_failed("broken")
    assert tracker.state_name("small") == "processed"
    assert not tracker.is_suppressed("small")
    assert tracker.state_name("broken") == "failed"


@pytest.mark.parametrize("setup,move", [
    ([], "mark_processing"),
    (["mark_queued"], "mark_queued"),
    (["mark_queued"], "mark_processed"),
    (["mark_queued", "mark_processing", "mark_processed"], "mark_queued"),
    (["mark_failed"], "mark_queued"),
    (["mark_failed"], "mark_processing"),
])
def test_invalid_transitions_raise(tracker, setup, move):
    for step in setup:
        getattr(tracker, step)("img_1")
    with pytest.raises(InvalidTransitionError):
        getattr(tracker, move)("img_1")


def test_one_state_per_image(tracker):
    tracker.mark_queued("a")
    tracker.mark_queued("b")
    tracker.mark_processing("b")
    tracker.mark_failed("c")

    counts = tracker.counts()
    assert counts == {"queued": 1, "processing": 1, "processed": 0, "failed": 1, "suppressed": 0}
    assert len(tracker) == 3


def test_failed_clears_suppressed_overlay(tracker):
    tracker.mark_queued("a")
    tracker.mark_processing("a")
    tracker.mark_failed("a")
    assert not tracker.is_suppressed("a")


def test_forget_only_drops_queued(tracker):
    tracker.mark_queued("a")
    tracker.mark_processed("b")
    tracker.forget("a")
    tracker.forget("b")
    assert "a" not in tracker
    assert tracker.state("b") == ImageState.PROCESSED


def test_release_only_drops_settled(tracker):
    tracker.mark_queued("a")
    tracker.mark_processing("a")
    tracker.release("a")
    assert tracker.state("a") == ImageState.PROCESSING

    tracker.mark_processed("a", suppressed=True)
    tracker.release("a")
    assert "a" not in tracker
    assert not tracker.is_suppressed("a")


def test_evict_drops_everything(tracker):
    tracker.mark_processed("a", suppressed=True)
    tracker.evict("a")
    tracker.evict("never-seen")
    assert "a" not in tracker
    assert tracker.counts()["suppressed"] == 0


def test_reset_returns_processed_and_keeps_in_flight(tracker):
    for element_id in ("p1", "p2", "f1", "q1", "w1"):
        tracker.mark_queued(element_id)
    for element_id in ("p1", "p2", "f1", "w1"):
        tracker.mark_processing(element_id)
    tracker.mark_processed("p1", suppressed=True)
    tracker.mark_processed("p2")
    tracker.mark_failed("f1")

    assert tracker.reset() == ["p1", "p2"]

    assert tracker.state("q1") == ImageState.QUEUED
    assert tracker.state("w1") == ImageState.PROCESSING
    assert "f1" not in tracker
    assert not tracker.is_suppressed("p1")
    # Cleared records can be queued again
    tracker.mark_queued("p1")
