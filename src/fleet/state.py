"""Aggregate outcome of a provisioning request."""

from dataclasses import dataclass, field
from typing import Optional

from backends.base import Node
from errors import PartialProvisioningError

FULL = 'full'
PARTIAL = 'partial'
FAILED = 'failed'


@dataclass
class ProvisioningResult:
    """Nodes created by one start call.

    Attributes:
        requested: Number of nodes asked for
        nodes: Created nodes, in creation order
        failures: Number of creation tasks that failed
    """
    requested: int
    nodes: list[Node] = field(default_factory=list)
    failures: int = 0

    @property
    def status(self) -> str:
        if self.failures == 0:
            return FULL
        if not self.nodes:
            return FAILED
        return PARTIAL

    @property
    def error(self) -> Optional[PartialProvisioningError]:
        """The partial-failure error, None unless status is partial."""
        if self.status != PARTIAL:
            return None
        return PartialProvisioningError(self.failures, self.requested)

    def raise_for_status(self) -> None:
        if (error := self.error) is not None:
            raise error

    def to_dict(self) -> dict:
        d = {
            'status': self.status,
            'requested': self.requested,
            'created': len(self.nodes),
            'failures': self.failures,
            'nodes': [node.to_dict() for node in self.nodes],
        }
        if self.error is not None:
            d['error'] = self.error.message
        return d
