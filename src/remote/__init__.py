"""Remote execution against provisioned nodes."""

from remote.executor import RemoteExecutor, classify_ssh_failure
from remote.retry import DEFAULT_POLICY, RetryPolicy, retry_call
from remote.stream import RemoteStream
from remote.tail import LogTailer, container_tailer

__all__ = [
    "RemoteExecutor",
    "classify_ssh_failure",
    "DEFAULT_POLICY",
    "RetryPolicy",
    "retry_call",
    "RemoteStream",
    "LogTailer",
    "container_tailer",
]
