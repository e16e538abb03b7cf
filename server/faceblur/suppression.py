"""
Suppression Controller

Applies and removes the blur treatment on image elements. The element's
dataset carries the `faceblurBlurred` marker, so suppression applied by
this system is distinguishable from a blur the page already had, and the
prior presentation is stored alongside it for restoration.

Clicking a suppressed element toggles between obscured and revealed; this
never touches lifecycle state or triggers detection.
"""

import logging
from typing import Dict, List

from faceblur.content import ContentTree, ImageElement

logger = logging.getLogger(__name__)

SUPPRESSED_MARKER = "faceblurBlurred"
ORIGINAL_PREFIX = "faceblurOriginal"

OBSCURED_TITLE = "Click to temporarily unblur"
REVEALED_TITLE = "Click to blur again"

# Presentation attributes saved before suppression and restored after
_SAVED_STYLES = ("filter", "transition", "cursor")


class SuppressionController:

    def __init__(self, blur_radius: int = 20):
        self.blur_filter = f"blur({blur_radius}px)"
        self._handlers: Dict[str, object] = {}

    @staticmethod
    def is_suppressed(element: ImageElement) -> bool:
        return element.dataset.get(SUPPRESSED_MARKER) == "true"

    def is_obscured(self, element: ImageElement) -> bool:
        """Suppressed and not temporarily revealed."""
        return self.is_suppressed(element) and element.style.get("filter") == self.blur_filter

    def apply(self, element: ImageElement) -> bool:
        """Obscure the element. Returns False if it was already suppressed."""
        if self.is_suppressed(element):
            return False

        for name in _SAVED_STYLES:
            element.dataset[f"{ORIGINAL_PREFIX}{name.capitalize()}"] = element.style.get(name, "")
        element.dataset[f"{ORIGINAL_PREFIX}Title"] = element.title

        element.style["filter"] = self.blur_filter
        element.style["transition"] = "filter 0.3s ease"
        element.style["cursor"] = "pointer"
        element.title = OBSCURED_TITLE
        element.dataset[SUPPRESSED_MARKER] = "true"

        handler = self._handlers.setdefault(element.node_id, self._make_toggle())
        element.add_event_listener("click", handler)

        logger.info("Suppressed %s", element.node_id)
        return True

    def remove(self, element: ImageElement) -> bool:
        """Restore the element. Returns False if it was not suppressed."""
        if not self.is_suppressed(element):
            return False

        for name in _SAVED_STYLES:
            original = element.dataset.pop(f"{ORIGINAL_PREFIX}{name.capitalize()}", "")
            if original:
                element.style[name] = original
            else:
                element.style.pop(name, None)
        element.title = element.dataset.pop(f"{ORIGINAL_PREFIX}Title", "")
        del element.dataset[SUPPRESSED_MARKER]

        handler = self._handlers.pop(element.node_id, None)
        if handler is not None:
            element.remove_event_listener("click", handler)

        logger.info("Unsuppressed %s", element.node_id)
        return True

    def toggle(self, element: ImageElement) -> None:
        """Switch a suppressed element between obscured and revealed."""
        if not self.is_suppressed(element):
            return
        if self.is_obscured(element):
            original = element.dataset.get(f"{ORIGINAL_PREFIX}Filter", "")
            if original:
                element.style["filter"] = original
            else:
                element.style.pop("filter", None)
            element.title = REVEALED_TITLE
        else:
            element.style["filter"] = self.blur_filter
            element.title = OBSCURED_TITLE

    def remove_all(self, tree: ContentTree) -> List[str]:
        """Unsuppress every marked element in the tree; returns their ids."""
        removed = [img.node_id for img in tree.images() if self.remove(img)]
        # Handlers of elements already detached from the tree
        self._handlers.clear()
        return removed

    def forget(self, element_id: str) -> None:
        self._handlers.pop(element_id, None)

    def _make_toggle(self):
        def on_click(element: ImageElement) -> None:
            self.toggle(element)
        return on_click
