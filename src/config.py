"""Fleet configuration management.

Configuration is loaded from a single YAML file with per-backend sections:

    cluster: fleet
    backend: gce            # gce | k8s
    image: gcr.io/my-project/fleet-node:latest
    gce:
      project: my-project
      zone: us-west1-c
    k8s:
      namespace: fleet
      load_balancer: false
    ssh:
      user: alice

Resolution order for the file:
1. $FLEET_CONFIG environment variable
2. ./fleet.yaml (working directory)
3. ~/.config/fleet/fleet.yaml

A missing file means defaults. Environment variables PROJECT, ZONE,
IMG/TAG and FLEET_SYSTEM override the file.
"""

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigurationError

# Backends selectable by the `backend` key
BACKEND_NAMES = ('gce', 'k8s')

DEFAULT_CLUSTER = 'fleet'
DEFAULT_PORT = 443
DEFAULT_AUTHORITY_DIR = 'secrets'
DEFAULT_AUTHORITY_FILE = 'fleet.pem'


@dataclass
class GCEConfig:
    """Compute Engine settings."""
    project: str = ''
    zone: str = ''
    machine_type: str = 'f1-micro'
    image_project: str = 'cos-cloud'
    image_family: str = 'cos-stable'
    network_tag: str = 'fleet'
    operation_timeout: float = 5.0
    address_timeout: float = 5.0
    poll_interval: float = 0.25


@dataclass
class K8sConfig:
    """Kubernetes settings."""
    kubeconfig: Optional[Path] = None
    context: str = ''
    namespace: str = 'fleet'
    load_balancer: bool = False
    nodeport_host: str = 'localhost'
    lb_timeout: float = 512.0
    lb_stabilize: float = 90.0
    delete_namespace: bool = False


@dataclass
class SSHConfig:
    """Remote shell settings (cloud backend)."""
    user: str = field(default_factory=getpass.getuser)
    key: Path = field(default_factory=lambda: Path.home() / '.ssh' / 'google_compute_engine')
    connect_timeout: int = 15


@dataclass
class FleetConfig:
    """Top-level configuration for a fleet of nodes."""
    cluster: str = DEFAULT_CLUSTER
    backend: str = 'gce'
    image: str = ''
    port: int = DEFAULT_PORT
    authority_dir: str = DEFAULT_AUTHORITY_DIR
    authority_file: str = DEFAULT_AUTHORITY_FILE
    config_file: Optional[Path] = None
    gce: GCEConfig = field(default_factory=GCEConfig)
    k8s: K8sConfig = field(default_factory=K8sConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)

    @property
    def authority_path(self) -> Path:
        """Local path of the authority PEM."""
        return Path(self.authority_dir) / self.authority_file

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'FleetConfig':
        """Create FleetConfig from a parsed YAML mapping."""
        config = cls(config_file=config_file)
        for key in ('cluster', 'backend', 'image', 'authority_dir', 'authority_file'):
            if key in data:
                setattr(config, key, str(data[key]))
        if 'port' in data:
            config.port = int(data['port'])

        gce = data.get('gce') or {}
        for key, value in gce.items():
            if not hasattr(config.gce, key):
                raise ConfigurationError(f"Unknown gce setting: {key}")
            setattr(config.gce, key, value)

        k8s = data.get('k8s') or {}
        for key, value in k8s.items():
            if not hasattr(config.k8s, key):
                raise ConfigurationError(f"Unknown k8s setting: {key}")
            if key == 'kubeconfig' and value:
                value = Path(value).expanduser()
            setattr(config.k8s, key, value)

        ssh = data.get('ssh') or {}
        if user := ssh.get('user'):
            config.ssh.user = user
        if key_path := ssh.get('key'):
            config.ssh.key = Path(key_path).expanduser()
        if 'connect_timeout' in ssh:
            config.ssh.connect_timeout = int(ssh['connect_timeout'])

        return config

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """Apply environment overrides (PROJECT, ZONE, IMG/TAG, FLEET_SYSTEM)."""
        env = os.environ if environ is None else environ
        if project := env.get('PROJECT'):
            self.gce.project = project
        if zone := env.get('ZONE'):
            self.gce.zone = zone
        if img := env.get('IMG'):
            tag = env.get('TAG')
            self.image = f"{img}:{tag}" if tag else img
        if system := env.get('FLEET_SYSTEM'):
            self.backend = system

    def validate(self) -> None:
        """Check the settings needed to provision on the selected backend.

        Raises:
            ConfigurationError: On unknown backend or missing identifiers
        """
        if self.backend not in BACKEND_NAMES:
            raise ConfigurationError(
                f"Unknown backend '{self.backend}' (expected one of: {', '.join(BACKEND_NAMES)})"
            )
        if not self.cluster:
            raise ConfigurationError("cluster name is required")
        if not self.image:
            raise ConfigurationError("image is required (set 'image' or IMG/TAG)")
        if not self.authority_dir:
            raise ConfigurationError("authority_dir is required")
        if self.backend == 'gce':
            if not self.gce.project:
                raise ConfigurationError("gce.project is required (or set PROJECT)")
            if not self.gce.zone:
                raise ConfigurationError("gce.zone is required (or set ZONE)")
        if self.backend == 'k8s' and not self.k8s.namespace:
            raise ConfigurationError("k8s.namespace is required")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    return data


def find_config_file() -> Optional[Path]:
    """Discover the fleet config file.

    Resolution order:
    1. $FLEET_CONFIG environment variable
    2. ./fleet.yaml
    3. ~/.config/fleet/fleet.yaml
    """
    if env_path := os.environ.get('FLEET_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigurationError(f"FLEET_CONFIG={env_path} does not exist")

    local = Path.cwd() / 'fleet.yaml'
    if local.exists():
        return local

    user = Path.home() / '.config' / 'fleet' / 'fleet.yaml'
    if user.exists():
        return user

    return None


def load_config(path: Optional[Path] = None, environ: Optional[dict] = None) -> FleetConfig:
    """Load configuration from YAML (if any) and apply environment overrides."""
    path = path or find_config_file()
    if path is not None:
        try:
            data = _parse_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path}: invalid YAML: {e}") from e
        config = FleetConfig.from_dict(data, config_file=path)
    else:
        config = FleetConfig()
    config.apply_env(environ)
    return config
