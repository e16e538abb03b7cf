"""
Lifecycle Tracker

Explicit state map keyed by element id. Absence from the map means the
image is undiscovered. The `suppressed` overlay is only meaningful for
processed images.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from faceblur.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ImageState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


UNDISCOVERED = "undiscovered"

# None stands for undiscovered
_ALLOWED = {
    None: {ImageState.QUEUED, ImageState.PROCESSED, ImageState.FAILED},
    ImageState.QUEUED: {ImageState.PROCESSING},
    ImageState.PROCESSING: {ImageState.PROCESSED, ImageState.FAILED},
    ImageState.PROCESSED: set(),
    ImageState.FAILED: set(),
}

SETTLED = (ImageState.PROCESSED, ImageState.FAILED)


class LifecycleTracker:
    """Classifies every discovered image into exactly one lifecycle state."""

    def __init__(self):
        self._states: Dict[str, ImageState] = {}
        self._suppressed: Set[str] = set()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, element_id: str) -> bool:
        return element_id in self._states

    def state(self, element_id: str) -> Optional[ImageState]:
        return self._states.get(element_id)

    def state_name(self, element_id: str) -> str:
        state = self._states.get(element_id)
        return state.value if state else UNDISCOVERED

    def is_settled(self, element_id: str) -> bool:
        return self._states.get(element_id) in SETTLED

    def is_suppressed(self, element_id: str) -> bool:
        return element_id in self._suppressed

    def in_state(self, state: ImageState) -> List[str]:
        return [eid for eid, s in self._states.items() if s == state]

    def count(self, state: ImageState) -> int:
        return sum(1 for s in self._states.values() if s == state)

    def counts(self) -> Dict[str, int]:
        result = {state.value: 0 for state in ImageState}
        for state in self._states.values():
            result[state.value] += 1
        result["suppressed"] = len(self._suppressed)
        return result

    def _move(self, element_id: str, target: ImageState) -> None:
        current = self._states.get(element_id)
        if target not in _ALLOWED[current]:
            raise InvalidTransitionError(element_id, current or UNDISCOVERED, target)
        self._states[element_id] = target
        logger.debug("%s: %s -> %s", element_id, current or UNDISCOVERED, target.value)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_queued(self, element_id: str) -> None:
        self._move(element_id, ImageState.QUEUED)

    def mark_processing(self, element_id: str) -> None:
        self._move(element_id, ImageState.PROCESSING)

    def mark_processed(self, element_id: str, suppressed: bool = False) -> None:
        self._move(element_id, ImageState.PROCESSED)
        if suppressed:
            self._suppressed.add(element_id)
        else:
            self._suppressed.discard(element_id)

    def mark_failed(self, element_id: str) -> None:
        self._move(element_id, ImageState.FAILED)
        self._suppressed.discard(element_id)

    def forget(self, element_id: str) -> None:
        """Return a queued image to undiscovered (its queue entry was dropped)."""
        if self._states.get(element_id) == ImageState.QUEUED:
            del self._states[element_id]

    def release(self, element_id: str) -> None:
        """Return a settled image to undiscovered so it can be evaluated again."""
        if self.is_settled(element_id):
            del self._states[element_id]
            self._suppressed.discard(element_id)

    def evict(self, element_id: str) -> None:
        """Drop every trace of an element removed from the content tree."""
        self._states.pop(element_id, None)
        self._suppressed.discard(element_id)

    def reset(self) -> List[str]:
        """
        Clear processed/failed records and every suppressed flag.

        Returns the ids that were processed, in discovery order, so the
        caller can requeue them. Queued and processing entries are kept.
        """
        processed = self.in_state(ImageState.PROCESSED)
        for element_id in processed + self.in_state(ImageState.FAILED):
            del self._states[element_id]
        self._suppressed.clear()
        return processed
