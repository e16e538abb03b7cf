"""
Command Router

Translates inbound commands (enable/disable, rescan, replace the reference
set) into Scheduler, Observer and Tracker operations. The router owns the
PipelineState; the other components only read it.

Every command is acknowledged immediately. Discovery and drains run as
background tasks, so an ack never means "processing finished".
"""

import asyncio
import logging
from typing import Callable, Sequence, Set

from faceblur.config import Settings
from faceblur.content import ContentTree
from faceblur.errors import ContractError, FingerprintMismatchError
from faceblur.fingerprint import EmbeddingFingerprint, Fingerprint
from faceblur.matcher import Matcher
from faceblur.models import Ack, Command, CommandAction
from faceblur.observer import DiscoveryObserver
from faceblur.scheduler import Scheduler
from faceblur.state import PipelineState
from faceblur.suppression import SuppressionController
from faceblur.tracker import LifecycleTracker

logger = logging.getLogger(__name__)


class CommandRouter:

    def __init__(
        self,
        state: PipelineState,
        tree: ContentTree,
        tracker: LifecycleTracker,
        scheduler: Scheduler,
        observer: DiscoveryObserver,
        suppression: SuppressionController,
        matcher: Matcher,
        settings: Settings,
        store=None
    ):
        self.state = state
        self._tree = tree
        self._tracker = tracker
        self._scheduler = scheduler
        self._observer = observer
        self._suppression = suppression
        self._matcher = matcher
        self._store = store

        self.settle_delay = settings.settle_delay
        self.startup_delay = settings.startup_delay
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, command: Command) -> Ack:
        """Apply a command-channel message and acknowledge it."""
        logger.info("Received command: %s", command.action.value)
        try:
            if command.action == CommandAction.TOGGLE_BLUR:
                self.enable(bool(command.enabled))
            elif command.action == CommandAction.SCAN_PAGE:
                self.rescan()
            elif command.action == CommandAction.UPDATE_REFERENCES:
                self.replace_references(command.fingerprints or [])
        except ContractError as e:
            logger.warning("Rejected %s: %s", command.action.value, e)
            return Ack(success=False, error=str(e))
        return Ack(success=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def restore(self, enabled: bool, references: Sequence[Fingerprint]) -> None:
        """Adopt persisted state at startup; the first scan waits for the page to settle."""
        self.state.enabled = enabled
        try:
            self.state.replace_references(self._validated(references))
        except ContractError as e:
            logger.warning("Ignoring stored references: %s", e)
        logger.info("Enabled=%s, References=%d", enabled, len(self.state.references))
        if self.state.active:
            self._later(self.startup_delay, self._observer.discover)

    def enable(self, enabled: bool) -> None:
        self.state.enabled = enabled
        self._persist_enabled()

        if enabled:
            logger.info("Enabled, scanning...")
            self._later(self.settle_delay, self._observer.discover)
            return

        self._scheduler.clear_queue()
        removed = self._suppression.remove_all(self._tree)
        self._tracker.reset()
        logger.info("Disabled and unsuppressed %d images", len(removed))

    def replace_references(self, fingerprints: Sequence[Fingerprint]) -> int:
        """
        Swap the reference set and re-evaluate everything already processed.

        Returns the number of images requeued.
        """
        references = self._validated(fingerprints)

        self._scheduler.clear_queue()
        self.state.replace_references(references)
        self._persist_references()

        self._suppression.remove_all(self._tree)
        requeued = sum(
            1 for element_id in self._tracker.reset()
            if self._tree.contains(element_id) and self._scheduler.enqueue(element_id)
        )
        logger.info("Updated references (%d), requeued %d images", len(references), requeued)

        if self.state.active:
            # Entries dropped from the queue above are undiscovered again
            self._observer.discover()
        return requeued

    def rescan(self) -> None:
        self._scheduler.clear_queue()
        logger.info("Manual scan requested")
        self._later(self.settle_delay, self._observer.discover)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_pending(self) -> None:
        """Wait for scheduled settle-delay scans to run."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validated(self, fingerprints: Sequence[Fingerprint]):
        references = tuple(fingerprints)
        for fingerprint in references:
            self._matcher.check(fingerprint)

        lengths = sorted({
            len(fingerprint.embedding) for fingerprint in references
            if isinstance(fingerprint, EmbeddingFingerprint)
        })
        if len(lengths) > 1:
            raise FingerprintMismatchError(f"Reference embeddings differ in length: {lengths}")
        return references

    def _later(self, delay: float, callback: Callable[[], object]) -> asyncio.Task:
        async def run() -> None:
            await asyncio.sleep(delay)
            callback()

        task = asyncio.get_running_loop().create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _persist_enabled(self) -> None:
        if self._store is not None:
            self._store.save_enabled(self.state.enabled)

    def _persist_references(self) -> None:
        if self._store is not None:
            self._store.save_references(self.state.references)

