"""Node model and the backend adapter interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from common import Deadline
from config import FleetConfig
from errors import UnsupportedOperationError

logger = logging.getLogger(__name__)

# Lifecycle states
REQUESTED = 'requested'
ACCEPTED = 'accepted'
READY = 'ready'
ENDPOINT_ASSIGNED = 'endpoint_assigned'
TIMED_OUT = 'timed_out'
FAILED = 'failed'

TRANSITIONS = {
    REQUESTED: {ACCEPTED, FAILED, TIMED_OUT},
    ACCEPTED: {READY, FAILED, TIMED_OUT},
    READY: {ENDPOINT_ASSIGNED, FAILED, TIMED_OUT},
    ENDPOINT_ASSIGNED: set(),
    TIMED_OUT: set(),
    FAILED: set(),
}

# How the authority bundle reaches a node
DELIVERY_COPY = 'copy'      # copied over the remote shell after creation
DELIVERY_SECRET = 'secret'  # mounted from a cluster-native secret


@dataclass(frozen=True)
class Endpoint:
    """Resolved network address of a node."""
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"https://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class Node:
    """A provisioned compute unit (instance or pod).

    Attributes:
        name: Identifier, unique within the cluster
        backend: Backend kind ('gce', 'k8s')
        cluster: Owning cluster label
        state: Lifecycle state (see TRANSITIONS)
        endpoint: Set once when the endpoint is resolved
    """
    name: str
    backend: str
    cluster: str
    state: str = REQUESTED
    endpoint: Optional[Endpoint] = None
    error: Optional[str] = field(default=None, repr=False)

    def transition(self, state: str) -> None:
        """Move to a new lifecycle state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if state not in TRANSITIONS.get(self.state, set()):
            raise ValueError(f"{self.name}: invalid transition {self.state} -> {state}")
        logger.debug("[%s] %s -> %s", self.name, self.state, state)
        self.state = state

    def assign_endpoint(self, endpoint: Endpoint) -> None:
        """Record the node's endpoint; allowed exactly once."""
        if self.endpoint is not None:
            raise ValueError(f"{self.name}: endpoint already assigned ({self.endpoint})")
        self.transition(ENDPOINT_ASSIGNED)
        self.endpoint = endpoint

    def fail(self, state: str, message: str) -> None:
        """Mark a terminal failure unless the node already finished."""
        if not TRANSITIONS.get(self.state):
            return
        self.transition(state)
        self.error = message

    def to_dict(self) -> dict:
        d = {
            'name': self.name,
            'backend': self.backend,
            'cluster': self.cluster,
            'state': self.state,
        }
        if self.endpoint is not None:
            d['host'] = self.endpoint.host
            d['port'] = self.endpoint.port
        if self.error is not None:
            d['error'] = self.error
        return d


class Backend(ABC):
    """Per-provider driver for creating, listing and deleting nodes.

    Each implementation owns its client handle. Subclasses set `name` and
    `authority_delivery`.
    """

    name: str = ''
    authority_delivery: str = DELIVERY_COPY
    # Upper bound on nodes per start, None when unbounded
    max_nodes: Optional[int] = None

    def __init__(self, config: FleetConfig):
        self.config = config

    @property
    def cluster(self) -> str:
        return self.config.cluster

    def node_name(self, index: int) -> str:
        """Name for the index-th node of a start call."""
        return f"{self.config.cluster}-{index:02d}"

    def prepare(self, bundle: bytes) -> None:
        """One-time setup before any node is created."""

    def install_authority(self, node: Node, bundle: bytes, deadline: Deadline) -> None:
        """Deliver the authority bundle to a created node (copy delivery only)."""
        raise UnsupportedOperationError(f"{self.name} delivers the authority via {self.authority_delivery}")

    @property
    def bulk_delete(self) -> bool:
        """True when teardown should try delete_namespace() first."""
        return False

    def delete_namespace(self) -> None:
        """Delete every node at once, where the backend can."""
        raise UnsupportedOperationError(f"{self.name} has no bulk delete")

    @abstractmethod
    def create(self, name: str, deadline: Deadline) -> Node:
        """Create one node and wait until its endpoint is known."""

    @abstractmethod
    def delete(self, name: str, deadline: Deadline) -> None:
        """Delete one node by name."""

    @abstractmethod
    def list(self, cluster: str) -> list[Node]:
        """List nodes owned by a cluster."""

    @abstractmethod
    def read(self, node: Node, path: str, deadline: Deadline) -> bytes:
        """Read a file from a node."""

    @abstractmethod
    def logs(self, node: Node, deadline: Deadline):
        """Attach a follow-mode log stream to the node's workload."""
