"""Provisioning and teardown of node fleets."""

from fleet.orchestrator import Fleet, Orchestrator
from fleet.state import ProvisioningResult
from fleet.teardown import teardown

__all__ = [
    'Fleet',
    'Orchestrator',
    'ProvisioningResult',
    'teardown',
]
