"""Readiness polling and endpoint resolution.

Every poll runs on a child of the caller's deadline bounded by its own
timeout: when the poll's own timeout elapses the result is TimedOutError,
when the caller cancels it is the caller's CancelledError.
"""

import logging
from typing import Callable, Optional, TypeVar

import requests

from backends.base import Endpoint
from common import Deadline
from errors import CreateError, TimedOutError

logger = logging.getLogger(__name__)

T = TypeVar('T')

OPERATION_READY = ('RUNNING', 'DONE')
LB_TIMEOUT_MESSAGE = "unable to provision load-balancer before timeout"


def _expired(deadline: Deadline, parent: Deadline, what: str, message: Optional[str]) -> Exception:
    if parent.cancelled:
        return parent.error(what)
    return TimedOutError(message or f"{what}: timed out")


def poll(
    check: Callable[[], Optional[T]],
    interval: float,
    timeout: Optional[float],
    deadline: Optional[Deadline] = None,
    what: str = 'poll',
    message: Optional[str] = None,
) -> T:
    """Call check every interval seconds until it returns non-None.

    Raises:
        TimedOutError: timeout elapsed (message overrides the default text)
        CancelledError: the caller's deadline was cancelled
    """
    parent = deadline or Deadline()
    child = parent.child(timeout)
    while True:
        result = check()
        if result is not None:
            return result
        logger.debug("[%s] not ready, sleeping %.2fs", what, interval)
        if not child.sleep(interval):
            raise _expired(child, parent, what, message)


def backoff_poll(
    check: Callable[[], Optional[T]],
    initial: float = 1.0,
    factor: float = 2.0,
    maximum: float = 64.0,
    timeout: Optional[float] = 512.0,
    deadline: Optional[Deadline] = None,
    what: str = 'poll',
    message: Optional[str] = None,
) -> T:
    """Like poll(), with exponentially growing intervals capped at maximum."""
    parent = deadline or Deadline()
    child = parent.child(timeout)
    interval = initial
    while True:
        result = check()
        if result is not None:
            return result
        logger.debug("[%s] not ready, sleeping %.0fs", what, interval)
        if not child.sleep(interval):
            raise _expired(child, parent, what, message)
        interval = min(interval * factor, maximum)


def wait_for_operation(
    get_operation: Callable[[], dict],
    name: str,
    interval: float = 0.25,
    timeout: float = 5.0,
    deadline: Optional[Deadline] = None,
) -> dict:
    """Poll a cloud operation until its status is RUNNING or DONE.

    Raises:
        CreateError: The operation finished with an error payload
        TimedOutError: Operation still pending after timeout
    """
    def check():
        op = get_operation()
        status = op.get('status')
        if status == 'DONE' and op.get('error'):
            errors = op['error'].get('errors') or []
            detail = '; '.join(e.get('message', str(e)) for e in errors) or str(op['error'])
            raise CreateError(name, detail)
        if status in OPERATION_READY:
            return op
        return None

    return poll(check, interval, timeout, deadline, what=name,
                message=f"{name}: operation not running after {timeout}s")


def external_ip(instance: dict, name: str) -> Optional[str]:
    """Extract the NAT address of an instance, None while unassigned.

    Raises:
        CreateError: The instance has no network interfaces
    """
    interfaces = instance.get('networkInterfaces') or []
    if not interfaces:
        raise CreateError(name, "instance has no network interfaces")
    if len(interfaces) > 1:
        logger.warning("[%s] %d network interfaces, using the first", name, len(interfaces))
    for config in interfaces[0].get('accessConfigs') or []:
        if ip := config.get('natIP'):
            return ip
    return None


def wait_for_external_ip(
    get_instance: Callable[[], dict],
    name: str,
    interval: float = 0.25,
    timeout: float = 5.0,
    deadline: Optional[Deadline] = None,
) -> str:
    """Poll an instance until its external address is assigned."""
    return poll(lambda: external_ip(get_instance(), name), interval, timeout, deadline, what=name,
                message=f"{name}: no external address after {timeout}s")


def ingress_host(service: dict, name: str) -> Optional[str]:
    """Extract the load-balancer host of a service, None while pending.

    Raises:
        CreateError: The ingress entry has neither ip nor hostname
    """
    ingress = ((service.get('status') or {}).get('loadBalancer') or {}).get('ingress') or []
    if not ingress:
        return None
    if len(ingress) > 1:
        logger.warning("[%s] %d load-balancer ingresses, using the first", name, len(ingress))
    host = ingress[0].get('ip') or ingress[0].get('hostname')
    if not host:
        raise CreateError(name, "load-balancer ingress has neither ip nor hostname")
    return host


def wait_for_load_balancer(
    get_service: Callable[[], dict],
    name: str,
    port: int,
    timeout: float = 512.0,
    stabilize: float = 90.0,
    deadline: Optional[Deadline] = None,
) -> Endpoint:
    """Wait for a load-balancer ingress, then for it to settle.

    Raises:
        TimedOutError: "unable to provision load-balancer before timeout"
    """
    parent = deadline or Deadline()
    host = backoff_poll(lambda: ingress_host(get_service(), name), initial=1.0, factor=2.0,
                        maximum=64.0, timeout=timeout, deadline=parent, what=name,
                        message=LB_TIMEOUT_MESSAGE)
    logger.info("[%s] load-balancer at %s, waiting %.0fs for it to stabilize", name, host, stabilize)
    if stabilize > 0 and not parent.sleep(stabilize):
        raise parent.error(name)
    return Endpoint(host, port)


def wait_for_node(
    session: requests.Session,
    endpoint: Endpoint,
    interval: float = 2.0,
    timeout: float = 120.0,
    deadline: Optional[Deadline] = None,
) -> dict:
    """Poll a node's /health over mutual TLS until it answers 200."""
    url = f"{endpoint.url}/health"

    def check():
        try:
            resp = session.get(url, timeout=5)
        except requests.exceptions.RequestException as e:
            logger.debug("[%s] health probe failed: %s", endpoint, e)
            return None
        if resp.status_code != 200:
            logger.debug("[%s] health probe returned %d", endpoint, resp.status_code)
            return None
        return resp.json()

    return poll(check, interval, timeout, deadline, what=str(endpoint),
                message=f"{endpoint}: node not healthy after {timeout}s")
