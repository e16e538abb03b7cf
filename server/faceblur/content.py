"""
Content Tree

In-process model of the continuously-mutating content the pipeline
watches: container nodes holding image elements. Structural changes are
announced to subscribers as MutationRecords, and image elements carry the
presentation attributes (style, dataset, title) and event listeners the
Suppression Controller works with.
"""

import logging
import uuid
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from faceblur.image_processor import get_image_dimensions

logger = logging.getLogger(__name__)

EventHandler = Callable[["ImageElement"], None]


def new_node_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class ContentNode:
    """A container; images are its descendants."""

    def __init__(self, node_id: Optional[str] = None):
        self.node_id = node_id or new_node_id("node")
        self.parent: Optional["ContentNode"] = None
        self.children: List["ContentNode"] = []

    def iter_images(self) -> Iterator["ImageElement"]:
        """Depth-first walk over this subtree's image elements."""
        if isinstance(self, ImageElement):
            yield self
        for child in self.children:
            yield from child.iter_images()

    def iter_nodes(self) -> Iterator["ContentNode"]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()


class ImageElement(ContentNode):
    """
    An image in the content stream.

    Readiness follows the browser model: an element is ready once loading
    completed with a non-zero natural size. `cross_origin` elements load
    and display fine but refuse pixel reads.
    """

    def __init__(
        self,
        src: str = "",
        node_id: Optional[str] = None,
        cross_origin: bool = False
    ):
        super().__init__(node_id or new_node_id("img"))
        self.src = src
        self.cross_origin = cross_origin
        self.data: Optional[bytes] = None
        self.natural_width = 0
        self.natural_height = 0
        self.complete = False
        self.errored = False

        self.style: Dict[str, str] = {}
        self.dataset: Dict[str, str] = {}
        self.title = ""
        self._listeners: Dict[str, List[EventHandler]] = {}

    @property
    def is_ready(self) -> bool:
        return self.complete and not self.errored and self.natural_width > 0

    def load(self, data: bytes) -> None:
        """Finish loading with the given bytes and fire `load` or `error`."""
        self.data = data
        self.complete = True
        try:
            self.natural_width, self.natural_height = get_image_dimensions(data)
        except Exception as e:
            logger.debug("%s: cannot read image header: %s", self.node_id, e)
            self.fail()
            return
        self.dispatch("load")

    def fail(self) -> None:
        """Loading failed (network error, unsupported format)."""
        self.complete = True
        self.errored = True
        self.natural_width = self.natural_height = 0
        self.dispatch("error")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event_listener(self, event: str, handler: EventHandler) -> None:
        handlers = self._listeners.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def remove_event_listener(self, event: str, handler: EventHandler) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def dispatch(self, event: str) -> None:
        for handler in list(self._listeners.get(event, [])):
            handler(self)

    def click(self) -> None:
        self.dispatch("click")


class MutationRecord(NamedTuple):
    added: Tuple[ContentNode, ...] = ()
    removed: Tuple[ContentNode, ...] = ()


MutationCallback = Callable[[MutationRecord], None]


class ContentTree:
    """Root container plus an id index and mutation subscribers."""

    def __init__(self):
        self.root = ContentNode("root")
        self._nodes: Dict[str, ContentNode] = {self.root.node_id: self.root}
        self._subscribers: List[MutationCallback] = []

    def subscribe(self, callback: MutationCallback) -> Callable[[], None]:
        """Register for mutation records; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, record: MutationRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception:
                # One broken subscriber must not stop the others
                logger.exception("Mutation subscriber failed")

    def append(self, node: ContentNode, parent_id: Optional[str] = None) -> ContentNode:
        parent = self._nodes.get(parent_id or self.root.node_id)
        if parent is None:
            raise KeyError(parent_id)
        if node.node_id in self._nodes:
            raise ValueError(f"Node {node.node_id} is already attached")

        node.parent = parent
        parent.children.append(node)
        for descendant in node.iter_nodes():
            self._nodes[descendant.node_id] = descendant

        self._notify(MutationRecord(added=(node,)))
        return node

    def remove(self, node_id: str) -> ContentNode:
        if node_id == self.root.node_id:
            raise ValueError("The root cannot be removed")
        node = self._nodes.get(node_id)
        if node is None:
            raise KeyError(node_id)

        node.parent.children.remove(node)
        node.parent = None
        for descendant in node.iter_nodes():
            self._nodes.pop(descendant.node_id, None)

        self._notify(MutationRecord(removed=(node,)))
        return node

    def get(self, node_id: str) -> Optional[ContentNode]:
        return self._nodes.get(node_id)

    def get_image(self, element_id: str) -> Optional[ImageElement]:
        node = self._nodes.get(element_id)
        return node if isinstance(node, ImageElement) else None

    def contains(self, node_id: str) -> bool:
        return node_id in self._nodes

    def images(self) -> List[ImageElement]:
        """All image elements in document order."""
        return list(self.root.iter_images())
