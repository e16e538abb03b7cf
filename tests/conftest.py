"""Shared fixtures: synthetic images, a scripted detector and fast pipeline settings."""

from __future__ import annotations

import asyncio
import io
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pytest
import pytest_asyncio
from PIL import Image

from faceblur.config import Settings
from faceblur.content import ImageElement
from faceblur.detection import FaceDetector
from faceblur.fingerprint import BoundingBox, Detection, create_hash_fingerprint
from faceblur.pipeline import FaceBlurPipeline

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
GREY = (128, 128, 128)

Color = Tuple[int, int, int]

BOX = BoundingBox(x_min=0, y_min=0, width=100, height=100)

# Landmarks in a 100x100 box at the origin
ALICE_POINTS = [(10, 10), (90, 10), (50, 50), (20, 90), (80, 90)]
BOB_POINTS = [(90, 90), (10, 90), (90, 10), (80, 10), (20, 10)]


def make_image_bytes(color: Color = GREY, size: Tuple[int, int] = (120, 120), fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def face(points: Iterable[Tuple[float, float]], embedding=None, box: BoundingBox = BOX) -> Detection:
    return Detection(box=box, landmarks=tuple(points), embedding=embedding)


ALICE = face(ALICE_POINTS)
BOB = face(BOB_POINTS)
ALICE_REF = create_hash_fingerprint(ALICE)
BOB_REF = create_hash_fingerprint(BOB)


class FakeDetector(FaceDetector):
    """
    Detector scripted by image color: the top-left pixel picks the result.

    Records every call and the peak number of concurrent detections.
    """

    def __init__(
        self,
        faces: Optional[Dict[Color, List[Detection]]] = None,
        delay: float = 0.0,
        fail_on: Iterable[Color] = ()
    ):
        self.faces = faces or {}
        self.delay = delay
        self.fail_on = set(fail_on)
        self.calls: List[Color] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_detect: Optional[Callable[[], None]] = None

    async def detect(self, pixels: np.ndarray) -> List[Detection]:
        color = tuple(int(c) for c in pixels[0, 0])
        self.calls.append(color)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.on_detect is not None:
            self.on_detect()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if color in self.fail_on:
                raise RuntimeError("model crashed")
            return list(self.faces.get(color, []))
        finally:
            self.in_flight -= 1


def fast_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        encryption_key=None,
        debounce=0.01,
        batch_delay=0.0,
        load_poll_interval=0.01,
        load_max_attempts=5,
        settle_delay=0.0,
        startup_delay=0.0,
        max_concurrent=5,
        min_image_size=80,
    )
    values.update(overrides)
    return Settings(**values)


def add_image(
    pipeline: FaceBlurPipeline,
    color: Color = GREY,
    size: Tuple[int, int] = (120, 120),
    loaded: bool = True,
    cross_origin: bool = False,
    parent_id: Optional[str] = None,
    data: Optional[bytes] = None
) -> ImageElement:
    element = ImageElement(src=f"https://example.test/{color}", cross_origin=cross_origin)
    if loaded:
        element.load(data if data is not None else make_image_bytes(color, size))
    pipeline.tree.append(element, parent_id)
    return element


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector(faces={RED: [ALICE], BLUE: [BOB], GREEN: []})


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture
def pipeline(settings, detector) -> FaceBlurPipeline:
    """Pipeline with the observer not subscribed; tests drive the scheduler directly."""
    pipe = FaceBlurPipeline(settings, detector)
    pipe.state.enabled = True
    pipe.state.replace_references([ALICE_REF])
    return pipe


@pytest_asyncio.fixture
async def running(settings, detector):
    """Started pipeline: mutations are observed, nothing enabled yet."""
    pipe = FaceBlurPipeline(settings, detector)
    await pipe.start()
    yield pipe
    await pipe.stop()
