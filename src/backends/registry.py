"""Backend registry keyed by the `backend` configuration value."""

from backends.base import Backend
from backends.gce import ComputeEngineBackend
from backends.k8s import KubernetesBackend
from config import FleetConfig
from errors import ConfigurationError

BACKENDS: dict[str, type[Backend]] = {
    'gce': ComputeEngineBackend,
    'k8s': KubernetesBackend,
}


def get_backend(config: FleetConfig) -> Backend:
    """Instantiate the backend named by config.backend.

    Raises:
        ConfigurationError: If no backend has that name
    """
    try:
        backend_class = BACKENDS[config.backend]
    except KeyError:
        raise ConfigurationError(
            f"Unknown backend '{config.backend}' (expected one of: {', '.join(sorted(BACKENDS))})"
        ) from None
    return backend_class(config)
