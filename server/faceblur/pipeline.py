"""
Pipeline wiring.

Builds every component from one Settings instance and shares the
router-owned PipelineState with the Scheduler and the Observer.
"""

import logging
from typing import List, Optional

from faceblur.config import Settings
from faceblur.content import ContentTree, ImageElement
from faceblur.database import SettingsStore
from faceblur.detection import FaceDetector, extract_reference_fingerprint, load_reference_directory
from faceblur.fingerprint import Fingerprint, build_fingerprinter
from faceblur.image_processor import ImageProcessor
from faceblur.matcher import build_matcher
from faceblur.models import ImageInfo
from faceblur.observer import DiscoveryObserver
from faceblur.router import CommandRouter
from faceblur.scheduler import Scheduler
from faceblur.state import PipelineState
from faceblur.suppression import SuppressionController
from faceblur.tracker import LifecycleTracker

logger = logging.getLogger(__name__)


class FaceBlurPipeline:

    def __init__(
        self,
        settings: Settings,
        detector: FaceDetector,
        store: Optional[SettingsStore] = None
    ):
        self.settings = settings
        self.detector = detector
        self.store = store

        self.tree = ContentTree()
        self.tracker = LifecycleTracker()
        self.state = PipelineState()
        self.matcher = build_matcher(settings)
        self.fingerprinter = build_fingerprinter(settings.fingerprint_kind)
        self.suppression = SuppressionController(blur_radius=settings.blur_radius)
        self.processor = ImageProcessor(method=settings.censor_method, blur_radius=settings.blur_radius)

        self.scheduler = Scheduler(
            self.tree, self.tracker, self.state, detector,
            self.matcher, self.fingerprinter, self.suppression, settings,
        )
        self.observer = DiscoveryObserver(
            self.tree, self.tracker, self.scheduler, self.suppression, self.state, settings,
        )
        self.router = CommandRouter(
            self.state, self.tree, self.tracker, self.scheduler, self.observer,
            self.suppression, self.matcher, settings, store=store,
        )

    async def start(self) -> None:
        self.observer.start()
        if self.store is not None:
            self.router.restore(
                self.store.load_enabled(),
                self.store.load_references(self.settings.fingerprint_kind),
            )
        logger.info("Pipeline started with %s", self.detector.name)

    async def stop(self) -> None:
        self.observer.stop()
        await self.router.shutdown()
        self.scheduler.cancel()
        logger.info("Pipeline stopped")

    async def settle(self) -> None:
        """Wait until no scan is scheduled and no drain is running."""
        await self.router.wait_pending()
        await self.scheduler.wait_idle()

    async def add_reference_photo(self, image_bytes: bytes) -> Fingerprint:
        """Fingerprint a reference photo and append it to the reference set."""
        fingerprint = await extract_reference_fingerprint(self.detector, image_bytes, self.fingerprinter)
        self.router.replace_references(self.state.references + (fingerprint,))
        return fingerprint

    async def sync_reference_directory(self) -> List[str]:
        """Replace the reference set with one fingerprint per photo in `reference_dir`."""
        fingerprints, names = await load_reference_directory(
            self.settings.reference_dir, self.detector, self.fingerprinter
        )
        self.router.replace_references(fingerprints)
        logger.info("Synced %d reference faces from %s", len(names), self.settings.reference_dir)
        return names

    def describe(self, element: ImageElement) -> ImageInfo:
        return ImageInfo(
            element_id=element.node_id,
            src=element.src,
            state=self.tracker.state_name(element.node_id),
            suppressed=self.suppression.is_suppressed(element),
            obscured=self.suppression.is_obscured(element),
            loaded=element.is_ready,
            natural_width=element.natural_width,
            natural_height=element.natural_height,
            cross_origin=element.cross_origin,
        )
