"""
Face Detection Capability

The pipeline treats detection as a black box behind `FaceDetector.detect`.
DlibFaceDetector implements it with the face_recognition library
(dlib HOG/CNN boxes, 68-point landmarks, 128-dim encodings), so both
fingerprint variants can be built from its output.

Also here: turning reference photos into fingerprints.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Tuple

import numpy as np

from faceblur.errors import NoFaceDetectedError
from faceblur.fingerprint import BoundingBox, Detection, Fingerprint, Fingerprinter
from faceblur.image_processor import decode_image

logger = logging.getLogger(__name__)

REFERENCE_EXTENSIONS = (".heic", ".jpg", ".jpeg", ".png")


class FaceDetector:
    """Interface that detection implementations must follow."""

    async def detect(self, pixels: np.ndarray) -> List[Detection]:
        """Find faces in an RGB image. May return an empty list or raise."""
        raise NotImplementedError

    @property
    def name(self) -> str:
        return type(self).__name__


def _face_recognition():
    # dlib is a heavy optional dependency, imported on first detection
    import face_recognition
    return face_recognition


class DlibFaceDetector(FaceDetector):
    """
    Face detector using dlib via face_recognition library.

    Args:
        model: "hog" (faster, CPU) or "cnn" (more accurate, needs GPU)
    """

    def __init__(self, model: str = "hog"):
        self.model = model

    async def detect(self, pixels: np.ndarray) -> List[Detection]:
        # Blocking dlib call; keep it off the event loop thread
        return await asyncio.to_thread(self._detect_sync, pixels)

    def _detect_sync(self, pixels: np.ndarray) -> List[Detection]:
        fr = _face_recognition()

        # Returns list of (top, right, bottom, left) tuples
        locations = fr.face_locations(pixels, model=self.model)
        if not locations:
            return []

        landmarks = fr.face_landmarks(pixels, face_locations=locations)
        encodings = fr.face_encodings(pixels, known_face_locations=locations)

        detections = []
        for (top, right, bottom, left), features, encoding in zip(locations, landmarks, encodings):
            points = tuple(
                (float(x), float(y))
                for feature in features.values()
                for x, y in feature
            )
            detections.append(Detection(
                box=BoundingBox(
                    x_min=left,
                    y_min=top,
                    width=right - left,
                    height=bottom - top,
                ),
                landmarks=points,
                embedding=encoding,
                confidence=1.0  # dlib doesn't provide confidence scores
            ))

        return detections


# ============================================================================
# Reference photos
# ============================================================================

def _largest(detections: List[Detection]) -> Detection:
    return max(detections, key=lambda d: d.box.width * d.box.height)


async def extract_reference_fingerprint(
    detector: FaceDetector,
    image_bytes: bytes,
    fingerprinter: Fingerprinter
) -> Fingerprint:
    """
    Fingerprint the largest face of a reference photo.

    Raises:
        NoFaceDetectedError: the photo has no detectable face.
    """
    pixels = await asyncio.to_thread(decode_image, image_bytes)
    detections = await detector.detect(pixels)
    if not detections:
        raise NoFaceDetectedError("No face detected. Please upload a clear photo of your face.")
    return fingerprinter(_largest(detections))


async def load_reference_directory(
    directory: str,
    detector: FaceDetector,
    fingerprinter: Fingerprinter
) -> Tuple[List[Fingerprint], List[str]]:
    """
    Build a reference set from a folder of photos.

    Expected structure:
        known_faces/
            alice.jpg
            bob.heic

    Label is extracted from filename (without extension). Photos without
    a face, or that fail to decode, are skipped with a warning.

    Returns:
        (fingerprints, names) where fingerprints[i] belongs to names[i]
    """
    fingerprints: List[Fingerprint] = []
    names: List[str] = []

    known_dir = Path(directory)
    if not known_dir.exists():
        logger.warning("%s does not exist. No reference faces loaded.", directory)
        return fingerprints, names

    image_files = sorted(
        path for path in known_dir.iterdir()
        if path.suffix.lower() in REFERENCE_EXTENSIONS
    )

    for image_path in image_files:
        try:
            fingerprint = await extract_reference_fingerprint(
                detector, image_path.read_bytes(), fingerprinter
            )
        except NoFaceDetectedError:
            logger.warning("No face found in %s", image_path.name)
            continue
        except Exception as e:
            logger.warning("Error loading %s: %s", image_path.name, e)
            continue

        fingerprints.append(fingerprint)
        names.append(image_path.stem)
        logger.info("Loaded %s -> %s", image_path.name, image_path.stem)

    logger.info("Loaded %d reference fingerprints for %d people", len(fingerprints), len(set(names)))
    return fingerprints, names
