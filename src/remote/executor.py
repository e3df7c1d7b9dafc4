"""Remote shell execution against provisioned nodes.

Commands run through the system ssh client with public-key authentication.
Host keys are not checked: nodes are recreated freely and trust is
established afterwards through the mutual-TLS authority.
"""

import logging
import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from common import Deadline, stream_command
from errors import AuthenticationError, RemoteCommandError, RemoteConnectionError
from remote.retry import DEFAULT_POLICY, RetryPolicy, retry_call
from remote.stream import RemoteStream

logger = logging.getLogger(__name__)

SSH_PORT = 22
SSH_OPTIONS = [
    '-o', 'StrictHostKeyChecking=no',
    '-o', 'UserKnownHostsFile=/dev/null',
    '-o', 'LogLevel=ERROR',
    '-o', 'BatchMode=yes',
]

# ssh exits 255 for its own failures; anything else is the remote command's status
SSH_FAILURE_STATUS = 255
AUTH_FAILURE_MARKERS = ('Permission denied', 'unable to authenticate', 'Too many authentication failures')


def classify_ssh_failure(host: str, command: str, returncode: int, stderr: str) -> Exception:
    """Map a failed ssh invocation to the remote error taxonomy."""
    if returncode == SSH_FAILURE_STATUS:
        if any(marker in stderr for marker in AUTH_FAILURE_MARKERS):
            return AuthenticationError(host, stderr.strip())
        return RemoteConnectionError(host, stderr.strip())
    return RemoteCommandError(host, command, returncode, stderr)


@dataclass
class RemoteExecutor:
    """Authenticated remote shell with a uniform retry policy.

    Attributes:
        user: Remote user
        key: Private key for public-key authentication
        connect_timeout: ssh ConnectTimeout (seconds)
        policy: Retry policy for transient failures
    """
    user: str
    key: Path
    connect_timeout: int = 15
    port: int = SSH_PORT
    policy: RetryPolicy = field(default=DEFAULT_POLICY)

    def ssh_command(self, host: str, command: str) -> list[str]:
        return [
            'ssh', '-i', str(self.key), '-p', str(self.port),
            *SSH_OPTIONS,
            '-o', f'ConnectTimeout={self.connect_timeout}',
            f'{self.user}@{host}', command,
        ]

    def _attempt(
        self,
        host: str,
        command: str,
        sink: Callable[[bytes], object],
        deadline: Deadline,
        input: Optional[bytes] = None,
    ) -> None:
        """Run one ssh invocation; raise a classified error on failure."""
        rc, stderr = stream_command(self.ssh_command(host, command), sink, deadline, input=input)
        if rc != 0:
            raise classify_ssh_failure(host, command, rc, stderr)

    def run(self, host: str, command: str, deadline: Optional[Deadline] = None) -> RemoteStream:
        """Start a command and return its live output stream.

        Attempts run on a background thread and are retried on transient
        errors until the deadline fires. The stream stays open while the
        command runs and finishes with the terminal error, if any. Closing
        the stream stops the command.
        """
        task = (deadline or Deadline()).child()
        stream = RemoteStream(on_close=task.cancel)

        def pump():
            error = None
            try:
                retry_call(
                    lambda: self._attempt(host, command, stream.write, task),
                    self.policy, task, what=host,
                )
            except Exception as e:
                logger.debug("[%s] '%s' failed: %s", host, command, e)
                error = e
            stream.finish(error)

        threading.Thread(target=pump, name=f'ssh-{host}', daemon=True).start()
        return stream

    def copy(
        self,
        host: str,
        directory: str,
        filename: str,
        content: bytes,
        deadline: Optional[Deadline] = None,
        mode: str = '0644',
    ) -> None:
        """Write content to /tmp/<directory>/<filename> on the remote host.

        Retried on transient errors like run().
        """
        deadline = deadline or Deadline()
        remote_dir = f"/tmp/{directory}"
        remote_path = f"{remote_dir}/{filename}"
        command = (
            f"mkdir -p {shlex.quote(remote_dir)}"
            f" && cat > {shlex.quote(remote_path)}"
            f" && chmod {mode} {shlex.quote(remote_path)}"
        )
        logger.info("[%s] Copying %d bytes to %s", host, len(content), remote_path)
        retry_call(
            lambda: self._attempt(host, command, lambda _chunk: None, deadline, input=content),
            self.policy, deadline, what=host,
        )

    def read_file(self, host: str, path: str, deadline: Optional[Deadline] = None) -> RemoteStream:
        """Stream the contents of a remote file."""
        return self.run(host, f"cat {shlex.quote(path)}", deadline)
