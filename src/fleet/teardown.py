"""Delete every node of a cluster."""

import logging
from typing import Optional

from backends.base import Backend
from common import Deadline, fan_out
from errors import FleetError

logger = logging.getLogger(__name__)


def teardown(backend: Backend, cluster: str, deadline: Optional[Deadline] = None) -> int:
    """Delete the cluster's nodes concurrently.

    When the backend is configured for bulk deletion (k8s.delete_namespace)
    that is tried first; any failure there falls back to per-node deletes.
    Backend failures are logged and not raised.

    Returns:
        Number of nodes deleted
    """
    deadline = deadline or Deadline()
    try:
        nodes = backend.list(cluster)
    except FleetError as e:
        logger.error("[%s] unable to enumerate nodes: %s", cluster, e.message)
        return 0

    if backend.bulk_delete:
        try:
            backend.delete_namespace()
            logger.info("[%s] namespace deleted with %d node(s)", cluster, len(nodes))
            return len(nodes)
        except FleetError as e:
            logger.warning("[%s] %s; deleting nodes one by one", cluster, e.message)

    if not nodes:
        logger.info("[%s] no nodes to delete", cluster)
        return 0

    outcomes = fan_out(lambda node: backend.delete(node.name, deadline), nodes, name='delete')
    deleted = 0
    for outcome in outcomes:
        if outcome.ok:
            deleted += 1
        else:
            logger.error("[%s] delete failed: %s", outcome.item.name, outcome.error)
    logger.info("[%s] deleted %d/%d node(s)", cluster, deleted, len(nodes))
    return deleted
