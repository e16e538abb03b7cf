"""
Error taxonomy for the suppression pipeline.

Per-image errors never escape the Scheduler's batch; they are caught,
logged and turned into a `failed` lifecycle state. Only reference-photo
ingestion errors reach the user.
"""


class FaceBlurError(Exception):
    """Base class for all pipeline errors."""


class UnreadableImageError(FaceBlurError):
    """Pixels cannot be read (cross-origin restriction or decode failure). Terminal."""


class ContractError(FaceBlurError):
    """Two collaborators disagree about the shape of the data they exchange."""


class FingerprintMismatchError(ContractError):
    """Fingerprints of different variants or lengths were compared."""


class InvalidTransitionError(FaceBlurError):
    """A lifecycle transition that the tracker does not allow."""

    def __init__(self, element_id: str, current, target):
        self.element_id = element_id
        self.current = current
        self.target = target
        super().__init__(f"{element_id}: cannot move from {current} to {target}")


class NoFaceDetectedError(FaceBlurError):
    """A reference photo contains no detectable face."""
