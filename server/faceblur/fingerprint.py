"""
Face Fingerprints

A fingerprint is the compact identity signature of one detected face.
Two interchangeable variants exist and a deployment uses exactly one:

- HashFingerprint: 64-bit binary string derived from box-normalized
  landmark positions, plus the normalized landmarks themselves.
- EmbeddingFingerprint: dense identity vector produced by the detector
  (128-dim for dlib).

Field names are serialized in camelCase so reference sets sent over the
command channel (`{"hash": ..., "landmarks": ..., "boundingBox": ...}`)
validate directly.
"""

from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import (
    BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator
)
from pydantic.alias_generators import to_camel

from faceblur.config import FingerprintKind
from faceblur.errors import ContractError

HASH_BITS = 64
MIDPOINT = 0.5

Point = Tuple[float, float]


def _frozen_vector(value) -> np.ndarray:
    vector = np.array(value, dtype=np.float64).reshape(-1)
    vector.flags.writeable = False
    return vector


class BoundingBox(BaseModel):
    """Face bounding box in image pixels."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    x_min: float = Field(..., description="Left edge")
    y_min: float = Field(..., description="Top edge")
    width: float = Field(..., description="Box width", gt=0)
    height: float = Field(..., description="Box height", gt=0)


class Detection(BaseModel):
    """One face as returned by the detection capability."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    box: BoundingBox
    landmarks: Tuple[Point, ...] = Field(default=(), description="Keypoints in image pixels")
    embedding: Optional[np.ndarray] = Field(None, description="Identity vector, if the detector produces one")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("embedding", mode="before")
    @classmethod
    def _coerce_embedding(cls, value):
        return None if value is None else _frozen_vector(value)


class HashFingerprint(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    kind: Literal["hash"] = "hash"
    hash: str = Field(
        ..., pattern=r"^[01]+$", min_length=HASH_BITS, max_length=HASH_BITS,
        description="Binary landmark hash"
    )
    landmarks: Tuple[Point, ...] = Field(default=(), description="Box-normalized landmarks")
    bounding_box: BoundingBox


class EmbeddingFingerprint(BaseModel):
    model_config = ConfigDict(
        frozen=True, arbitrary_types_allowed=True,
        alias_generator=to_camel, populate_by_name=True,
    )

    kind: Literal["embedding"] = "embedding"
    embedding: np.ndarray
    bounding_box: BoundingBox

    @field_validator("embedding", mode="before")
    @classmethod
    def _coerce_embedding(cls, value):
        return _frozen_vector(value)

    @field_serializer("embedding")
    def _serialize_embedding(self, value: np.ndarray) -> List[float]:
        return value.tolist()


Fingerprint = Union[HashFingerprint, EmbeddingFingerprint]

FINGERPRINT_TYPES: Dict[FingerprintKind, type] = {
    FingerprintKind.HASH: HashFingerprint,
    FingerprintKind.EMBEDDING: EmbeddingFingerprint,
}

_fingerprint_list = TypeAdapter(List[Fingerprint])


# ============================================================================
# Construction
# ============================================================================

def normalize_landmarks(detection: Detection) -> Tuple[Point, ...]:
    """Express each landmark relative to the bounding box, in [0, 1]."""
    box = detection.box
    return tuple(
        ((x - box.x_min) / box.width, (y - box.y_min) / box.height)
        for x, y in detection.landmarks
    )


def landmark_hash(landmarks: Sequence[Point], bits: int = HASH_BITS) -> str:
    """
    Two bits per landmark, one per axis: 1 if past the box midpoint.

    The result is right-padded with zeros and truncated to `bits` so two
    hashes are always comparable whatever the landmark count.
    """
    raw = "".join(
        ("1" if x > MIDPOINT else "0") + ("1" if y > MIDPOINT else "0")
        for x, y in landmarks
    )
    return raw.ljust(bits, "0")[:bits]


def create_hash_fingerprint(detection: Detection) -> HashFingerprint:
    landmarks = normalize_landmarks(detection)
    return HashFingerprint(
        hash=landmark_hash(landmarks),
        landmarks=landmarks,
        bounding_box=detection.box,
    )


def create_embedding_fingerprint(detection: Detection) -> EmbeddingFingerprint:
    if detection.embedding is None:
        raise ContractError("Detector returned a face without an embedding")
    return EmbeddingFingerprint(embedding=detection.embedding, bounding_box=detection.box)


Fingerprinter = Callable[[Detection], Fingerprint]

FINGERPRINTERS: Dict[FingerprintKind, Fingerprinter] = {
    FingerprintKind.HASH: create_hash_fingerprint,
    FingerprintKind.EMBEDDING: create_embedding_fingerprint,
}


def build_fingerprinter(kind: FingerprintKind) -> Fingerprinter:
    return FINGERPRINTERS[FingerprintKind(kind)]


# ============================================================================
# Serialization
# ============================================================================

def dump_fingerprints(fingerprints: Sequence[Fingerprint]) -> List[dict]:
    """JSON-safe representation of a reference set."""
    return [fp.model_dump(mode="json", by_alias=True) for fp in fingerprints]


def load_fingerprints(data) -> Tuple[Fingerprint, ...]:
    """Validate a JSON-decoded reference set (either field naming style)."""
    return tuple(_fingerprint_list.validate_python(data or []))
