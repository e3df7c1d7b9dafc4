"""Log tailing for node workloads.

Workload container names are assigned by the node runtime, not by us (a
container declared as `fleet-node` runs as e.g. `klt-fleet-node-rmef`), so
the tailer finds the target by prefix filter before attaching.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Callable, Optional

from common import Deadline
from errors import AmbiguousTargetError
from remote.executor import RemoteExecutor
from remote.stream import RemoteStream

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0


@dataclass
class LogTailer:
    """Wait for exactly one matching target, then follow its logs.

    Attributes:
        what: Label used in log messages and errors
        list_targets: Returns identifiers currently matching the filter
        follow: Attaches a follow-mode stream to one identifier
        interval: Seconds between listing attempts
    """
    what: str
    list_targets: Callable[[Deadline], list[str]]
    follow: Callable[[str, Deadline], RemoteStream]
    interval: float = DEFAULT_INTERVAL

    def find_target(self, deadline: Deadline) -> str:
        """Poll until exactly one target matches.

        Zero matches keeps polling until the deadline fires.

        Raises:
            AmbiguousTargetError: More than one match
            TimedOutError/CancelledError: Deadline fired first
        """
        while True:
            matches = self.list_targets(deadline)
            if len(matches) == 1:
                logger.info("[%s] found %s", self.what, matches[0])
                return matches[0]
            if len(matches) > 1:
                raise AmbiguousTargetError(self.what, matches)
            logger.info("[%s] no match yet, sleeping %.0fs", self.what, self.interval)
            if not deadline.sleep(self.interval):
                raise deadline.error(self.what)

    def tail(self, deadline: Optional[Deadline] = None) -> RemoteStream:
        """Find the target and return its follow stream."""
        deadline = deadline or Deadline()
        target = self.find_target(deadline)
        return self.follow(target, deadline)


def container_tailer(
    executor: RemoteExecutor,
    host: str,
    name_filter: str,
    interval: float = DEFAULT_INTERVAL,
) -> LogTailer:
    """Tailer for a container on a remote docker host, driven over ssh."""
    list_command = f"docker container ls --filter=name={shlex.quote(name_filter)} --format='{{{{.ID}}}}'"

    def list_targets(deadline: Deadline) -> list[str]:
        output = executor.run(host, list_command, deadline).read()
        return output.decode('utf-8', errors='replace').split()

    def follow(container_id: str, deadline: Deadline) -> RemoteStream:
        logger.info("[%s] following logs of container %s", host, container_id)
        return executor.run(host, f"docker container logs --follow {shlex.quote(container_id)} 2>&1", deadline)

    return LogTailer(what=f"{host}/{name_filter}", list_targets=list_targets, follow=follow, interval=interval)
