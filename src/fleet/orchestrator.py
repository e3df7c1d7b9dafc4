"""Provisioning orchestrator: create N nodes concurrently and aggregate.

Each node is created by its own task. A failing task never stops its
siblings; the orchestrator waits for all of them and reports the outcome
as full, partial or (raised) total failure. Nodes that were created stay
live whatever happened to the others.
"""

import logging
from typing import Optional

from backends.base import DELIVERY_COPY, Backend, Node
from common import Deadline, fan_out
from errors import ConfigurationError, ProvisioningError
from fleet.state import ProvisioningResult
from fleet.teardown import teardown
from server.tls import Authority

logger = logging.getLogger(__name__)


class Orchestrator:
    """Drives one backend through a provisioning request."""

    def __init__(self, backend: Backend, authority: Authority):
        self.backend = backend
        self.authority = authority

    def start(self, count: int, deadline: Optional[Deadline] = None) -> ProvisioningResult:
        """Provision count nodes.

        Returns:
            ProvisioningResult with status 'full' or 'partial'

        Raises:
            ConfigurationError: count is negative or above the backend limit
            ProvisioningError: Every creation failed
        """
        if count < 0:
            raise ConfigurationError(f"node count must be non-negative (got {count})")
        limit = self.backend.max_nodes
        if limit is not None and count > limit:
            raise ConfigurationError(f"{self.backend.name}: at most {limit} nodes per start (got {count})")

        result = ProvisioningResult(requested=count)
        if count == 0:
            return result

        deadline = deadline or Deadline()
        bundle = self.authority.node_bundle()
        self.backend.prepare(bundle)

        names = [self.backend.node_name(i) for i in range(count)]
        logger.info("[%s] creating %d node(s) on %s", self.backend.cluster, count, self.backend.name)
        outcomes = fan_out(lambda name: self.backend.create(name, deadline), names, name='create')

        for outcome in outcomes:
            if outcome.ok:
                result.nodes.append(outcome.value)
            else:
                logger.error("[%s] %s", outcome.item, outcome.error)
                result.failures += 1

        if not result.nodes:
            raise ProvisioningError(f"all {count} node(s) failed to create", result=result)

        if self.backend.authority_delivery == DELIVERY_COPY:
            self.distribute(result.nodes, bundle, deadline)

        if result.failures:
            logger.warning("[%s] %s", self.backend.cluster, result.error.message)
        else:
            logger.info("[%s] %d node(s) created", self.backend.cluster, count)
        return result

    def distribute(self, nodes: list[Node], bundle: bytes, deadline: Deadline) -> int:
        """Copy the authority bundle to every node; failures are logged only.

        Returns:
            Number of nodes that received the bundle
        """
        outcomes = fan_out(lambda node: self.backend.install_authority(node, bundle, deadline),
                           nodes, name='authority')
        for outcome in outcomes:
            if not outcome.ok:
                logger.error("[%s] authority not installed: %s", outcome.item.name, outcome.error)
        return sum(1 for outcome in outcomes if outcome.ok)


class Fleet:
    """Entry point bundling a backend with its authority."""

    def __init__(self, backend: Backend, authority: Authority):
        self.backend = backend
        self.authority = authority
        self.orchestrator = Orchestrator(backend, authority)

    def start(self, count: int, deadline: Optional[Deadline] = None) -> ProvisioningResult:
        return self.orchestrator.start(count, deadline)

    def nodes(self) -> list[Node]:
        return self.backend.list(self.backend.cluster)

    def node(self, name: str) -> Node:
        """Look up one node of this cluster by name.

        Raises:
            ConfigurationError: No node has that name
        """
        for node in self.nodes():
            if node.name == name:
                return node
        raise ConfigurationError(f"{self.backend.cluster}: no node named '{name}'")

    def teardown(self, deadline: Optional[Deadline] = None) -> int:
        return teardown(self.backend, self.backend.cluster, deadline)

    def tail(self, name: str, deadline: Optional[Deadline] = None):
        return self.backend.logs(self.node(name), deadline or Deadline())

    def read(self, name: str, path: str, deadline: Optional[Deadline] = None) -> bytes:
        return self.backend.read(self.node(name), path, deadline or Deadline())
