"""Process-scoped pipeline flags, owned by the Command Router."""

from dataclasses import dataclass
from typing import Tuple

from faceblur.fingerprint import Fingerprint


@dataclass
class PipelineState:
    """
    Shared by handle with the Scheduler and the Discovery Observer.

    `generation` increases on every reference-set replacement so work that
    started against an older set can tell its result is stale.
    """
    enabled: bool = False
    references: Tuple[Fingerprint, ...] = ()
    generation: int = 0

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.references)

    def replace_references(self, references) -> None:
        self.references = tuple(references)
        self.generation += 1
