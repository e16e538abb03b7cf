"""Tests for command dispatch and the terminal resets it drives."""

from collections import Counter

import pytest
from cryptography.fernet import Fernet

from faceblur.database import SettingsStore
from faceblur.fingerprint import EmbeddingFingerprint, dump_fingerprints
from faceblur.models import Command, CommandAction
from faceblur.pipeline import FaceBlurPipeline
from faceblur.tracker import ImageState

from conftest import (
    ALICE, ALICE_REF, BLUE, BOB, BOB_REF, BOX, GREEN, RED, FakeDetector,
    add_image, fast_settings, wait_until
)


def enable(pipeline, references=(ALICE_REF,)):
    pipeline.router.replace_references(list(references))
    return pipeline.router.handle(Command(action=CommandAction.TOGGLE_BLUR, enabled=True))


def settled(pipeline, *elements):
    return all(pipeline.tracker.is_settled(e.node_id) for e in elements)


@pytest.mark.asyncio
async def test_enable_scans_existing_images(running, detector):
    alice = add_image(running, RED)
    bob = add_image(running, BLUE)

    ack = enable(running)
    assert ack.success

    await running.settle()
    await wait_until(lambda: settled(running, alice, bob))
    assert running.tracker.is_suppressed(alice.node_id)
    assert not running.tracker.is_suppressed(bob.node_id)


@pytest.mark.asyncio
async def test_ack_does_not_wait_for_processing(settings):
    detector = FakeDetector(faces={RED: [ALICE]}, delay=0.2)
    pipeline = FaceBlurPipeline(settings, detector)
    await pipeline.start()
    try:
        image = add_image(pipeline, RED)
        ack = enable(pipeline)

        assert ack.success
        assert image.node_id not in pipeline.tracker
        await pipeline.settle()
        assert pipeline.tracker.is_suppressed(image.node_id)
    finally:
        await pipeline.stop()


@pytest.mark.asyncio
async def test_enable_without_references_does_not_scan(running, detector):
    add_image(running, RED)
    running.router.handle(Command(action=CommandAction.TOGGLE_BLUR, enabled=True))
    await running.settle()

    assert running.scheduler.pending == 0
    assert detector.calls == []


@pytest.mark.asyncio
async def test_disable_unsuppresses_and_resets(running):
    alice = add_image(running, RED)
    bob = add_image(running, GREEN)
    enable(running)
    await running.settle()
    assert running.suppression.is_obscured(alice)

    ack = running.router.handle(Command(action=CommandAction.TOGGLE_BLUR, enabled=False))

    assert ack.success
    assert not running.state.enabled
    assert not running.suppression.is_suppressed(alice)
    assert "filter" not in alice.style
    assert alice.node_id not in running.tracker
    assert bob.node_id not in running.tracker


@pytest.mark.asyncio
async def test_disable_mid_drain_lets_in_flight_finish(settings):
    detector = FakeDetector(faces={RED: [ALICE]}, delay=0.05)
    pipeline = FaceBlurPipeline(settings.model_copy(update={"max_concurrent": 2}), detector)
    await pipeline.start()
    try:
        images = [add_image(pipeline, RED) for _ in range(6)]
        enable(pipeline)
        await wait_until(lambda: detector.in_flight == 2)
        in_flight = pipeline.tracker.in_state(ImageState.PROCESSING)
        assert len(in_flight) == 2

        pipeline.router.enable(False)
        assert pipeline.scheduler.pending == 0

        await pipeline.settle()

        assert len(detector.calls) == 2
        assert pipeline.scheduler.stats.images_processed == 2
        # Matched after the disable, so never obscured, then released
        assert not any(pipeline.suppression.is_suppressed(image) for image in images)
        assert not any(element_id in pipeline.tracker for element_id in in_flight)
        assert len(pipeline.tracker) == 0
    finally:
        await pipeline.stop()


@pytest.mark.asyncio
async def test_reenable_blurs_image_that_finished_during_disable(settings):
    detector = FakeDetector(faces={RED: [ALICE]}, delay=0.05)
    pipeline = FaceBlurPipeline(settings, detector)
    await pipeline.start()
    try:
        image = add_image(pipeline, RED)
        enable(pipeline)
        await wait_until(lambda: detector.in_flight == 1)

        pipeline.router.enable(False)
        await pipeline.settle()
        assert image.node_id not in pipeline.tracker

        pipeline.router.handle(Command(action=CommandAction.TOGGLE_BLUR, enabled=True))
        await pipeline.settle()

        assert pipeline.tracker.is_suppressed(image.node_id)
        assert pipeline.suppression.is_obscured(image)
        assert detector.calls == [RED, RED]
    finally:
        await pipeline.stop()


# ============================================================================
# Reference-set replacement
# ============================================================================

@pytest.mark.asyncio
async def test_replace_references_requeues_processed_once(running, detector, monkeypatch):
    alice = add_image(running, RED)
    bob = add_image(running, BLUE)
    empty = add_image(running, GREEN)
    enable(running)
    await running.settle()
    assert running.tracker.count(ImageState.PROCESSED) == 3

    requeued = []
    original = running.scheduler.enqueue

    def recording_enqueue(element_id):
        added = original(element_id)
        if added:
            requeued.append(element_id)
        return added

    monkeypatch.setattr(running.scheduler, "enqueue", recording_enqueue)
    detector.calls.clear()

    ack = running.router.handle(Command(
        action=CommandAction.UPDATE_REFERENCES,
        fingerprints=[BOB_REF],
    ))
    assert ack.success
    await running.settle()

    assert Counter(requeued) == Counter([alice.node_id, bob.node_id, empty.node_id])
    assert sorted(detector.calls) == sorted([RED, BLUE, GREEN])
    assert not running.suppression.is_suppressed(alice)
    assert running.suppression.is_obscured(bob)
    assert running.tracker.count(ImageState.PROCESSED) == 3


@pytest.mark.asyncio
async def test_replace_rediscovers_failed_images(running, detector):
    broken = add_image(running, RED, cross_origin=True)
    enable(running)
    await running.settle()
    assert running.tracker.state(broken.node_id) == ImageState.FAILED

    assert running.router.replace_references([BOB_REF]) == 0
    await running.settle()

    # Undiscovered again, then picked up by the follow-up discovery
    assert running.tracker.state(broken.node_id) == ImageState.FAILED
    assert detector.calls == []


@pytest.mark.asyncio
async def test_replace_with_empty_set_unsuppresses(running):
    alice = add_image(running, RED)
    enable(running)
    await running.settle()

    running.router.handle(Command(action=CommandAction.UPDATE_REFERENCES, fingerprints=[]))
    await running.settle()

    assert not running.state.active
    assert not running.suppression.is_suppressed(alice)
    assert running.tracker.state(alice.node_id) == ImageState.QUEUED

    # Re-adding a reference drains what was left queued
    running.router.replace_references([ALICE_REF])
    await running.settle()
    assert running.tracker.is_suppressed(alice.node_id)


@pytest.mark.asyncio
async def test_replace_during_drain_reevaluates_stale_results(settings):
    detector = FakeDetector(faces={RED: [ALICE], BLUE: [BOB]}, delay=0.05)
    pipeline = FaceBlurPipeline(settings, detector)
    await pipeline.start()
    try:
        alice = add_image(pipeline, RED)
        bob = add_image(pipeline, BLUE)
        enable(pipeline)
        await wait_until(lambda: detector.in_flight == 2)

        pipeline.router.replace_references([BOB_REF])
        await pipeline.settle()

        assert not pipeline.suppression.is_suppressed(alice)
        assert pipeline.suppression.is_suppressed(bob)
        assert pipeline.tracker.state(alice.node_id) == ImageState.PROCESSED
        assert len(detector.calls) == 4
    finally:
        await pipeline.stop()


@pytest.mark.asyncio
async def test_failure_against_replaced_references_is_retried(settings):
    detector = FakeDetector(faces={RED: [ALICE]}, delay=0.05, fail_on=[RED])

    def recover():
        if len(detector.calls) == 2:
            detector.fail_on.clear()

    detector.on_detect = recover
    pipeline = FaceBlurPipeline(settings, detector)
    await pipeline.start()
    try:
        image = add_image(pipeline, RED)
        enable(pipeline)
        await wait_until(lambda: detector.in_flight == 1)

        pipeline.router.replace_references([BOB_REF, ALICE_REF])
        await pipeline.settle()

        assert detector.calls == [RED, RED]
        assert pipeline.tracker.state(image.node_id) == ImageState.PROCESSED
        assert pipeline.suppression.is_obscured(image)
    finally:
        await pipeline.stop()


@pytest.mark.asyncio
async def test_wrong_variant_is_rejected(running):
    enable(running)
    wrong = EmbeddingFingerprint(embedding=[0.0] * 128, bounding_box=BOX)

    ack = running.router.handle(Command(action=CommandAction.UPDATE_REFERENCES, fingerprints=[wrong]))

    assert not ack.success
    assert "EmbeddingFingerprint" in ack.error
    assert running.state.references == (ALICE_REF,)


@pytest.mark.asyncio
async def test_embedding_references_of_mixed_length_are_rejected():
    pipeline = FaceBlurPipeline(fast_settings(fingerprint_kind="embedding"), FakeDetector())
    full = EmbeddingFingerprint(embedding=[0.0] * 128, bounding_box=BOX)
    short = EmbeddingFingerprint(embedding=[0.0] * 64, bounding_box=BOX)

    ack = pipeline.router.handle(Command(action=CommandAction.UPDATE_REFERENCES, fingerprints=[full, short]))

    assert not ack.success
    assert "differ in length" in ack.error
    assert pipeline.state.references == ()

    assert pipeline.router.handle(Command(action=CommandAction.UPDATE_REFERENCES, fingerprints=[full])).success


@pytest.mark.asyncio
async def test_restore_ignores_inconsistent_stored_references():
    pipeline = FaceBlurPipeline(fast_settings(fingerprint_kind="embedding"), FakeDetector())
    full = EmbeddingFingerprint(embedding=[0.0] * 128, bounding_box=BOX)
    short = EmbeddingFingerprint(embedding=[0.0] * 64, bounding_box=BOX)

    pipeline.router.restore(True, [full, short])

    assert pipeline.state.enabled
    assert pipeline.state.references == ()


@pytest.mark.asyncio
async def test_rescan_picks_up_images_added_while_disabled(running, detector):
    enable(running)
    await running.settle()
    running.state.enabled = False
    late = add_image(running, RED)
    running.state.enabled = True

    running.router.handle(Command(action=CommandAction.SCAN_PAGE))
    await running.settle()

    assert running.tracker.is_suppressed(late.node_id)


# ============================================================================
# Persistence
# ============================================================================

@pytest.mark.asyncio
async def test_state_survives_restart(tmp_path, detector):
    settings = fast_settings(
        database_url=f"sqlite:///{tmp_path / 'faceblur.db'}",
        encryption_key=Fernet.generate_key().decode(),
    )
    store = SettingsStore(settings.database_url, settings.encryption_key)
    first = FaceBlurPipeline(settings, detector, store)
    await first.start()
    enable(first)
    await first.stop()

    second = FaceBlurPipeline(settings, detector, SettingsStore(settings.database_url, settings.encryption_key))
    image = add_image(second, RED)
    await second.start()
    try:
        assert second.state.enabled
        assert dump_fingerprints(second.state.references) == dump_fingerprints([ALICE_REF])
        await second.settle()
        assert second.tracker.is_suppressed(image.node_id)
    finally:
        await second.stop()


def test_command_requires_enabled_for_toggle():
    with pytest.raises(ValueError):
        Command(action=CommandAction.TOGGLE_BLUR)


def test_command_accepts_wire_fingerprints():
    command = Command.model_validate({
        "action": "updateReferences",
        "fingerprints": dump_fingerprints([ALICE_REF, BOB_REF]),
    })
    assert dump_fingerprints(command.fingerprints) == dump_fingerprints([ALICE_REF, BOB_REF])
