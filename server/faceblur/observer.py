"""
Discovery Observer

Watches the content tree for newly inserted image-bearing nodes and offers
eligible images to the Scheduler.

Mutation bursts (infinite-scroll feeds append dozens of nodes at a time)
are coalesced: added roots accumulate in a buffer and one discovery pass
runs once the tree has been quiet for `debounce` seconds. Removals are
handled immediately so lifecycle records never outlive their elements.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

from faceblur.config import Settings
from faceblur.content import ContentNode, ContentTree, ImageElement, MutationRecord
from faceblur.scheduler import Scheduler
from faceblur.state import PipelineState
from faceblur.suppression import SuppressionController
from faceblur.tracker import LifecycleTracker

logger = logging.getLogger(__name__)


class DiscoveryObserver:

    def __init__(
        self,
        tree: ContentTree,
        tracker: LifecycleTracker,
        scheduler: Scheduler,
        suppression: SuppressionController,
        state: PipelineState,
        settings: Settings
    ):
        self._tree = tree
        self._tracker = tracker
        self._scheduler = scheduler
        self._suppression = suppression
        self._state = state

        self.debounce = settings.debounce
        self.poll_interval = settings.load_poll_interval
        self.max_attempts = settings.load_max_attempts

        self._buffer: Dict[str, ContentNode] = {}
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._watches: Dict[str, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe = None

    @property
    def awaiting_load(self) -> int:
        return len(self._watches)

    def start(self) -> None:
        """Subscribe to mutations. Must be called from the event loop."""
        if self._unsubscribe is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._tree.subscribe(self._on_mutation)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._buffer.clear()
        for task in list(self._watches.values()):
            task.cancel()
        self._watches.clear()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _on_mutation(self, record: MutationRecord) -> None:
        for node in record.removed:
            for image in node.iter_images():
                self._evict(image.node_id)

        if not record.added or not self._state.active:
            return

        for node in record.added:
            self._buffer[node.node_id] = node

        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = self._loop.call_later(self.debounce, self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        roots = list(self._buffer.values())
        self._buffer.clear()
        if not self._state.active:
            return

        candidates = [
            image
            for root in roots if self._tree.contains(root.node_id)
            for image in root.iter_images()
        ]
        queued = self._offer_all(candidates)
        logger.debug("Mutation pass: %d roots, %d images, %d queued", len(roots), len(candidates), queued)

    def _evict(self, element_id: str) -> None:
        self._scheduler.discard(element_id)
        self._tracker.evict(element_id)
        self._suppression.forget(element_id)
        task = self._watches.pop(element_id, None)
        if task is not None:
            task.cancel()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self) -> int:
        """Full pass over every image in the tree. Returns how many were queued."""
        if not self._state.active:
            logger.info("Scan skipped - not enabled or no references")
            return 0
        images = self._tree.images()
        queued = self._offer_all(images)
        logger.info("Scanned %d images, queued %d", len(images), queued)
        return queued

    def _offer_all(self, images: Iterable[ImageElement]) -> int:
        queued = sum(1 for image in images if self.offer(image))
        # Also picks up entries requeued while the pipeline was inactive
        self._scheduler.trigger_drain()
        return queued

    def offer(self, element: ImageElement) -> bool:
        """
        Classify one image and queue it if it needs detection.

        Returns True only when the image was added to the queue.
        """
        element_id = element.node_id
        if element_id in self._tracker or element_id in self._watches:
            return False

        if not element.is_ready:
            if element.errored:
                self._tracker.mark_failed(element_id)
            else:
                self._watches[element_id] = self._loop.create_task(self._await_ready(element))
            return False

        if self._scheduler.is_too_small(element):
            self._tracker.mark_processed(element_id)
            return False

        return self._scheduler.enqueue(element_id)

    async def _await_ready(self, element: ImageElement) -> None:
        """Poll an unloaded image, re-offering it once loaded."""
        element_id = element.node_id
        settled = asyncio.Event()

        def on_settle(_element: ImageElement) -> None:
            settled.set()

        element.add_event_listener("load", on_settle)
        element.add_event_listener("error", on_settle)
        try:
            for _ in range(self.max_attempts):
                try:
                    await asyncio.wait_for(settled.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                if element.complete:
                    break
        finally:
            element.remove_event_listener("load", on_settle)
            element.remove_event_listener("error", on_settle)
            self._watches.pop(element_id, None)

        if not self._tree.contains(element_id) or element_id in self._tracker:
            return

        if not element.is_ready:
            logger.info("Giving up on %s: %s", element_id, "load error" if element.errored else "never loaded")
            self._tracker.mark_failed(element_id)
            return

        if self._state.active and self.offer(element):
            self._scheduler.trigger_drain()
