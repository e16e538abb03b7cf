"""
Pydantic Models for API Request/Response Validation

These define the contract between the command sender (dashboard, browser
popup) and the pipeline server.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from faceblur.fingerprint import Fingerprint


# ============================================================================
# Command Channel Models
# ============================================================================

class CommandAction(str, Enum):
    """Inbound command-channel actions."""
    TOGGLE_BLUR = "toggleBlur"
    SCAN_PAGE = "scanPage"
    UPDATE_REFERENCES = "updateReferences"


class Command(BaseModel):
    """One command-channel message."""
    action: CommandAction
    enabled: Optional[bool] = Field(None, description="Required for toggleBlur")
    fingerprints: Optional[List[Fingerprint]] = Field(
        None,
        description="Complete replacement reference set for updateReferences"
    )

    @model_validator(mode="after")
    def _check_payload(self):
        if self.action == CommandAction.TOGGLE_BLUR and self.enabled is None:
            raise ValueError("toggleBlur requires 'enabled'")
        return self


class Ack(BaseModel):
    """Acknowledgement of receipt. Not a completion signal."""
    success: bool = True
    error: Optional[str] = None

    model_config = {
        "json_schema_extra": {"example": {"success": True}}
    }


# ============================================================================
# Content Models
# ============================================================================

class NodeResponse(BaseModel):
    """A node inserted into the content tree."""
    node_id: str
    parent_id: Optional[str] = None


class ImageInfo(BaseModel):
    """Lifecycle and presentation of one image element."""
    element_id: str
    src: str
    state: str = Field(..., examples=["processed"])
    suppressed: bool = Field(..., description="Suppression marker is set")
    obscured: bool = Field(..., description="Suppressed and not temporarily revealed")
    loaded: bool
    natural_width: int
    natural_height: int
    cross_origin: bool


class ImageListResponse(BaseModel):
    total_images: int
    images: List[ImageInfo]


# ============================================================================
# Reference Set Models
# ============================================================================

class ReferenceListResponse(BaseModel):
    total_references: int
    fingerprint_kind: str
    fingerprints: List[dict]


class ReferenceUploadResponse(BaseModel):
    status: str = Field(..., examples=["success"])
    message: str
    total_references: int


class ReferenceSyncResponse(BaseModel):
    status: str = Field(..., examples=["success"])
    loaded: List[str] = Field(..., examples=[["alice", "bob"]])
    total_references: int


# ============================================================================
# Health Check & Stats Models
# ============================================================================

class StatsResponse(BaseModel):
    """Scheduler counters since startup."""
    batches: int
    images_processed: int
    images_suppressed: int
    images_failed: int
    faces_detected: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., examples=["healthy"])
    version: str = Field(..., examples=["1.0.0"])
    enabled: bool
    total_references: int
    fingerprint_kind: str
    face_detector: str
    queued: int
    is_processing: bool
    lifecycle: Dict[str, int]
    stats: StatsResponse
    uptime_seconds: float


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    status: Literal["error"] = "error"
    error_code: str
    message: str
    details: Optional[dict] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "error",
                "error_code": "NO_FACE_DETECTED",
                "message": "No face was detected in the uploaded image",
                "details": {"image_size": "1920x1080"}
            }
        }
    }


# Error codes
class ErrorCode:
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    INVALID_IMAGE = "INVALID_IMAGE"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    CONTRACT_VIOLATION = "CONTRACT_VIOLATION"
    PROCESSING_ERROR = "PROCESSING_ERROR"
