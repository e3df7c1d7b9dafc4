"""Single-container runtime manifest for container-optimized instances.

The manifest is passed to the instance as opaque startup metadata
(gce-container-declaration). The runtime supports exactly one container,
so serialization rejects zero or several.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from errors import ConfigurationError


@dataclass
class Env:
    name: str
    value: str

    def to_dict(self) -> dict:
        return {'name': self.name, 'value': self.value}


@dataclass
class VolumeMount:
    name: str
    mount_path: str
    read_only: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'mountPath': self.mount_path}
        if self.read_only:
            d['readOnly'] = True
        return d


@dataclass
class Volume:
    """A scratch (emptyDir) or host-path volume; set exactly one."""
    name: str
    empty_dir_medium: Optional[str] = None
    host_path: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name}
        if self.host_path is not None:
            d['hostPath'] = {'path': self.host_path}
        else:
            d['emptyDir'] = {'medium': self.empty_dir_medium} if self.empty_dir_medium else {}
        return d


@dataclass
class Container:
    """Container entry of the manifest.

    Attributes:
        name: Container name
        image: Image reference
        privileged: Needed to bind ports below 1024
        restart_policy: Optional restart policy (e.g. Always)
        args: Argument list
        env: Environment variables
        volume_mounts: Mounted volumes
    """
    name: str
    image: str
    privileged: bool = False
    stdin: bool = False
    tty: bool = False
    restart_policy: Optional[str] = None
    args: list[str] = field(default_factory=list)
    env: list[Env] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'image': self.image}
        if self.privileged:
            d['securityContext'] = {'privileged': True}
        if self.stdin:
            d['stdin'] = True
        if self.tty:
            d['tty'] = True
        if self.restart_policy:
            d['restartPolicy'] = self.restart_policy
        if self.args:
            d['args'] = list(self.args)
        if self.env:
            d['env'] = [e.to_dict() for e in self.env]
        if self.volume_mounts:
            d['volumeMounts'] = [m.to_dict() for m in self.volume_mounts]
        return d


@dataclass
class Manifest:
    """Container declaration with its volumes."""
    containers: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ConfigurationError unless there is exactly one container."""
        if len(self.containers) != 1:
            raise ConfigurationError(
                f"Manifest must contain exactly one container (found {len(self.containers)})"
            )

    def to_dict(self) -> dict:
        spec: dict[str, Any] = {'containers': [c.to_dict() for c in self.containers]}
        if self.volumes:
            spec['volumes'] = [v.to_dict() for v in self.volumes]
        return {'spec': spec}

    def to_yaml(self) -> str:
        """Serialize to YAML after validation."""
        self.validate()
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


def node_manifest(
    image: str,
    system: str,
    port: int,
    authority_dir: str,
    extra_env: Optional[dict] = None,
    container_name: str = 'fleet-node',
) -> Manifest:
    """Build the manifest that runs a node process.

    The authority directory on the host (/tmp/<authority_dir>) is mounted
    read-only at /<authority_dir> in the container.
    """
    env = [
        Env('FLEET_MODE', 'node'),
        Env('FLEET_SYSTEM', system),
        Env('FLEET_ADDR', f"0.0.0.0:{port}"),
    ]
    for name, value in (extra_env or {}).items():
        env.append(Env(name, str(value)))

    return Manifest(
        containers=[
            Container(
                name=container_name,
                image=image,
                privileged=port < 1024,
                args=['-log=debug'],
                env=env,
                volume_mounts=[
                    VolumeMount('tmpfs', '/tmp'),
                    VolumeMount('authority', f"/{authority_dir}", read_only=True),
                ],
            ),
        ],
        volumes=[
            Volume('tmpfs', empty_dir_medium='Memory'),
            Volume('authority', host_path=f"/tmp/{authority_dir}"),
        ],
    )
