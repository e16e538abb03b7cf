"""
Scheduler

Bounded-concurrency drain of the discovery queue. Items are taken in FIFO
batches of at most `max_concurrent`; a batch runs concurrently on the
event loop and must fully settle before the next one starts, so no more
than `max_concurrent` images are ever in the `processing` state.

Per item: probe pixels, detect, fingerprint, match against the reference
set, suppress on a match. Whatever goes wrong with one image ends with
that image in `failed`; the batch carries on.
"""

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional

from faceblur.config import Settings
from faceblur.content import ContentTree, ImageElement
from faceblur.detection import FaceDetector
from faceblur.errors import ContractError, UnreadableImageError
from faceblur.fingerprint import Fingerprinter
from faceblur.image_processor import read_pixels
from faceblur.matcher import Matcher
from faceblur.state import PipelineState
from faceblur.suppression import SuppressionController
from faceblur.tracker import ImageState, LifecycleTracker

logger = logging.getLogger(__name__)


@dataclass
class SchedulerStats:
    batches: int = 0
    images_processed: int = 0
    images_suppressed: int = 0
    images_failed: int = 0
    faces_detected: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class Scheduler:

    def __init__(
        self,
        tree: ContentTree,
        tracker: LifecycleTracker,
        state: PipelineState,
        detector: FaceDetector,
        matcher: Matcher,
        fingerprinter: Fingerprinter,
        suppression: SuppressionController,
        settings: Settings
    ):
        self._tree = tree
        self._tracker = tracker
        self._state = state
        self._detector = detector
        self._matcher = matcher
        self._fingerprinter = fingerprinter
        self._suppression = suppression

        self.max_concurrent = settings.max_concurrent
        self.batch_delay = settings.batch_delay
        self.min_image_size = settings.min_image_size
        self.strict_contracts = settings.strict_contracts

        self._queue: Deque[str] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self.is_processing = False
        self.stats = SchedulerStats()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def queued_ids(self) -> List[str]:
        return list(self._queue)

    def is_too_small(self, element: ImageElement) -> bool:
        return (
            element.natural_width < self.min_image_size
            or element.natural_height < self.min_image_size
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, element_id: str) -> bool:
        """Queue an undiscovered image. Returns False if it was already known."""
        if element_id in self._tracker:
            return False
        self._tracker.mark_queued(element_id)
        self._queue.append(element_id)
        return True

    def discard(self, element_id: str) -> None:
        """Drop a queued entry (its element left the tree)."""
        try:
            self._queue.remove(element_id)
        except ValueError:
            return
        self._tracker.forget(element_id)

    def clear_queue(self) -> int:
        """Cancel all not-yet-started work. In-flight items are unaffected."""
        dropped = len(self._queue)
        for element_id in self._queue:
            self._tracker.forget(element_id)
        self._queue.clear()
        if dropped:
            logger.info("Cleared %d queued images", dropped)
        return dropped

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def trigger_drain(self) -> Optional[asyncio.Task]:
        """Start a drain in the background unless one is already running."""
        if self.is_processing or not self._queue:
            return self._drain_task
        self._drain_task = asyncio.get_running_loop().create_task(self.drain())
        self._drain_task.add_done_callback(self._drain_done)
        return self._drain_task

    def _drain_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Drain aborted: %s", error, exc_info=error)

    async def wait_idle(self) -> None:
        """Wait for the current drain, if any, to finish."""
        if self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    def cancel(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()

    async def drain(self) -> None:
        if self.is_processing:
            return
        self.is_processing = True
        try:
            while self._queue and self._state.active:
                batch = self._next_batch()
                if not batch:
                    continue

                self.stats.batches += 1
                logger.debug("Batch of %d (%d still queued)", len(batch), len(self._queue))
                await asyncio.gather(*(self._process(element_id) for element_id in batch))

                if self._queue and self.batch_delay:
                    # Let the rest of the loop breathe between batches
                    await asyncio.sleep(self.batch_delay)
        finally:
            self.is_processing = False

        logger.info(
            "Drain finished: %d processed, %d suppressed, %d failed so far",
            self.stats.images_processed, self.stats.images_suppressed, self.stats.images_failed,
        )

    def _next_batch(self) -> List[str]:
        batch = []
        while self._queue and len(batch) < self.max_concurrent:
            element_id = self._queue.popleft()
            if self._tracker.state(element_id) != ImageState.QUEUED:
                continue
            self._tracker.mark_processing(element_id)
            batch.append(element_id)
        return batch

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    async def _process(self, element_id: str) -> None:
        element = self._tree.get_image(element_id)
        if element is None:
            self._tracker.evict(element_id)
            return

        generation = self._state.generation
        references = self._state.references

        try:
            suppressed = await self._evaluate(element, references, generation)
        except UnreadableImageError as e:
            logger.warning("Skipping unreadable image %s: %s", element_id, e)
            self._commit(element_id, generation, failed=True)
        except ContractError:
            logger.exception("Contract violation while processing %s", element_id)
            self._commit(element_id, generation, failed=True)
            if self.strict_contracts:
                raise
        except Exception:
            logger.exception("Error processing %s", element_id)
            self._commit(element_id, generation, failed=True)
        else:
            self._commit(element_id, generation, suppressed=suppressed)

    async def _evaluate(self, element: ImageElement, references, generation: int) -> bool:
        """Decide whether the image must be suppressed, suppressing it if so."""
        if self._suppression.is_suppressed(element):
            return True

        if self.is_too_small(element):
            return False

        pixels = await asyncio.to_thread(read_pixels, element)
        detections = await self._detector.detect(pixels)
        self.stats.faces_detected += len(detections)
        if not detections:
            return False

        candidates = [self._fingerprinter(detection) for detection in detections]
        match = self._matcher.find_match(candidates, references)
        if match is None:
            return False

        if not self._still_current(element.node_id, generation):
            # Matched a reference set that has since been replaced, or the
            # pipeline was switched off mid-flight
            return False

        logger.info("Match in %s (face %d, reference %d)", element.node_id, *match)
        self._suppression.apply(element)
        return True

    def _still_current(self, element_id: str, generation: int) -> bool:
        return (
            self._state.enabled
            and self._state.generation == generation
            and self._tree.contains(element_id)
        )

    def _commit(self, element_id: str, generation: int, suppressed: bool = False, failed: bool = False) -> None:
        if self._tracker.state(element_id) != ImageState.PROCESSING:
            # Evicted while in flight
            return

        if failed:
            self._tracker.mark_failed(element_id)
            self.stats.images_failed += 1
        else:
            self._tracker.mark_processed(element_id, suppressed=suppressed)
            self.stats.images_processed += 1
            if suppressed:
                self.stats.images_suppressed += 1

        if self._state.enabled and self._state.generation == generation:
            return

        # Finished after a disable or against a replaced reference set:
        # the next discovery pass evaluates it again
        self._tracker.release(element_id)
        if self._state.active:
            self.enqueue(element_id)
