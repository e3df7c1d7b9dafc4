"""Kubernetes backend: one Deployment plus one Service per node.

Objects are managed through the kubectl CLI, so credentials and cluster
selection follow the usual kubeconfig rules. The authority bundle is
delivered once per start as a Secret that every node mounts read-only.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from backends.base import (
    ACCEPTED,
    DELIVERY_SECRET,
    FAILED,
    READY,
    TIMED_OUT,
    Backend,
    Endpoint,
    Node,
)
from backends.manifest import node_manifest
from common import Deadline, run_command, stream_command
from config import FleetConfig
from errors import (
    BackendError,
    ConfigurationError,
    CreateError,
    TimedOutError,
    UnsupportedOperationError,
)
from readiness import ingress_host, wait_for_load_balancer
from remote.stream import RemoteStream
from remote.tail import LogTailer

logger = logging.getLogger(__name__)

APP_LABEL = 'fleet'
CLUSTER_LABEL = 'fleet-cluster'
NODE_LABEL = 'node'
CONTAINER_NAME = 'fleet-node'
SECRET_NAME = 'fleet'
MAX_NODES = 256

# Namespaces shared with other workloads are never deleted wholesale
PROTECTED_NAMESPACES = ('default', 'kube-system', 'kube-public', 'kube-node-lease')


@dataclass
class Kubectl:
    """Thin wrapper around the kubectl CLI.

    Attributes:
        kubeconfig: Explicit kubeconfig file (default: kubectl's own lookup)
        context: kubeconfig context to use
        namespace: Namespace for namespaced commands
        timeout: Per-command timeout in seconds
    """
    kubeconfig: Optional[Path] = None
    context: str = ''
    namespace: str = ''
    timeout: int = 120

    def command(self, args: list[str], namespaced: bool = True) -> list[str]:
        cmd = ['kubectl']
        if self.kubeconfig:
            cmd += ['--kubeconfig', str(self.kubeconfig)]
        if self.context:
            cmd += ['--context', self.context]
        if namespaced and self.namespace:
            cmd += ['--namespace', self.namespace]
        return cmd + args

    def run(self, args: list[str], input: Optional[str] = None, namespaced: bool = True) -> str:
        """Run kubectl and return stdout.

        Raises:
            BackendError: On a nonzero exit
        """
        rc, out, err = run_command(self.command(args, namespaced), timeout=self.timeout, input=input)
        if rc != 0:
            raise BackendError(f"kubectl {args[0]} failed: {err.strip() or out.strip()}")
        return out

    def get_json(self, args: list[str], namespaced: bool = True) -> dict:
        out = self.run(args + ['-o', 'json'], namespaced=namespaced)
        try:
            return json.loads(out)
        except ValueError as e:
            raise BackendError(f"kubectl {args[0]}: unparseable output: {e}") from e

    def create(self, obj: dict) -> dict:
        """Create an object; fails if it already exists."""
        out = self.run(['create', '-f', '-', '-o', 'json'], input=json.dumps(obj))
        try:
            return json.loads(out)
        except ValueError as e:
            raise BackendError(f"kubectl create: unparseable output: {e}") from e

    def apply(self, obj: dict, namespaced: bool = True) -> None:
        """Create or update an object."""
        self.run(['apply', '-f', '-'], input=json.dumps(obj), namespaced=namespaced)

    def stream(self, args: list[str], deadline: Deadline) -> RemoteStream:
        """Run a long-lived kubectl command, streaming its stdout."""
        task = deadline.child()
        stream = RemoteStream(on_close=task.cancel)

        def pump():
            error = None
            try:
                rc, stderr = stream_command(self.command(args), stream.write, task)
                if rc != 0:
                    error = BackendError(f"kubectl {args[0]} failed: {stderr.strip()}")
            except Exception as e:
                error = e
            stream.finish(error)

        threading.Thread(target=pump, name=f'kubectl-{args[0]}', daemon=True).start()
        return stream


class KubernetesBackend(Backend):
    """Backend that runs each node as a one-replica Deployment with a Service."""

    name = 'k8s'
    authority_delivery = DELIVERY_SECRET
    max_nodes = MAX_NODES

    def __init__(self, config: FleetConfig, kubectl: Optional[Kubectl] = None):
        super().__init__(config)
        k8s = config.k8s
        self.kubectl = kubectl or Kubectl(
            kubeconfig=k8s.kubeconfig,
            context=k8s.context,
            namespace=k8s.namespace,
        )

    @property
    def bulk_delete(self) -> bool:
        return self.config.k8s.delete_namespace

    @property
    def service_type(self) -> str:
        return 'LoadBalancer' if self.config.k8s.load_balancer else 'NodePort'

    def labels(self, name: Optional[str] = None) -> dict:
        labels = {'app': APP_LABEL, CLUSTER_LABEL: self.cluster}
        if name:
            labels[NODE_LABEL] = name
        return labels

    def namespace_object(self) -> dict:
        return {
            'apiVersion': 'v1',
            'kind': 'Namespace',
            'metadata': {'name': self.config.k8s.namespace, 'labels': self.labels()},
        }

    def secret_object(self, bundle: bytes) -> dict:
        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'metadata': {'name': SECRET_NAME, 'labels': self.labels()},
            'type': 'Opaque',
            'data': {self.config.authority_file: base64.b64encode(bundle).decode('ascii')},
        }

    def deployment_object(self, name: str) -> dict:
        """One-replica Deployment running the node container."""
        if not self.config.image:
            raise ConfigurationError("k8s: image is required")
        manifest = node_manifest(
            image=self.config.image,
            system=self.name,
            port=self.config.port,
            authority_dir=self.config.authority_dir,
            container_name=CONTAINER_NAME,
        )
        manifest.validate()
        container = manifest.containers[0].to_dict()
        container['ports'] = [{'containerPort': self.config.port, 'protocol': 'TCP'}]
        labels = self.labels(name)
        return {
            'apiVersion': 'apps/v1',
            'kind': 'Deployment',
            'metadata': {'name': name, 'labels': labels},
            'spec': {
                'replicas': 1,
                'selector': {'matchLabels': labels},
                'template': {
                    'metadata': {'labels': labels},
                    'spec': {
                        'containers': [container],
                        'volumes': [
                            {'name': 'tmpfs', 'emptyDir': {}},
                            {'name': 'authority', 'secret': {'secretName': SECRET_NAME}},
                        ],
                    },
                },
            },
        }

    def service_object(self, name: str) -> dict:
        labels = self.labels(name)
        return {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': {'name': name, 'labels': labels},
            'spec': {
                'type': self.service_type,
                'selector': labels,
                'ports': [{
                    'name': 'https',
                    'port': self.config.port,
                    'targetPort': self.config.port,
                    'protocol': 'TCP',
                }],
            },
        }

    def prepare(self, bundle: bytes) -> None:
        """Ensure the namespace exists and holds the authority secret."""
        namespace = self.config.k8s.namespace
        logger.info("[%s] ensuring namespace and authority secret", namespace)
        self.kubectl.apply(self.namespace_object(), namespaced=False)
        self.kubectl.apply(self.secret_object(bundle))

    def _node_port(self, service: dict, name: str) -> int:
        try:
            return int(service['spec']['ports'][0]['nodePort'])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise CreateError(name, "service has no node port") from e

    def create(self, name: str, deadline: Deadline) -> Node:
        k8s = self.config.k8s
        node = Node(name=name, backend=self.name, cluster=self.cluster)

        logger.info("[%s] creating deployment", name)
        try:
            self.kubectl.create(self.deployment_object(name))
            node.transition(ACCEPTED)
            logger.info("[%s] creating %s service", name, self.service_type)
            service = self.kubectl.create(self.service_object(name))
        except BackendError as e:
            node.fail(FAILED, e.message)
            raise CreateError(name, e.message) from e
        node.transition(READY)

        if not k8s.load_balancer:
            endpoint = Endpoint(k8s.nodeport_host, self._node_port(service, name))
        else:
            try:
                endpoint = wait_for_load_balancer(
                    lambda: self.kubectl.get_json(['get', 'service', name]),
                    name, self.config.port,
                    timeout=k8s.lb_timeout, stabilize=k8s.lb_stabilize, deadline=deadline,
                )
            except TimedOutError as e:
                node.fail(TIMED_OUT, e.message)
                raise
            except BackendError as e:
                node.fail(FAILED, e.message)
                raise CreateError(name, e.message) from e

        node.assign_endpoint(endpoint)
        logger.info("[%s] created (%s)", name, endpoint.url)
        return node

    def delete(self, name: str, deadline: Deadline) -> None:
        logger.info("[%s] deleting deployment and service", name)
        self.kubectl.run(['delete', 'deployment,service', name])

    def delete_namespace(self) -> None:
        """Delete the whole namespace.

        Raises:
            UnsupportedOperationError: For namespaces shared with other workloads
        """
        namespace = self.config.k8s.namespace
        if namespace in PROTECTED_NAMESPACES:
            raise UnsupportedOperationError(f"refusing to delete namespace '{namespace}'")
        logger.info("[%s] deleting namespace", namespace)
        self.kubectl.run(['delete', 'namespace', namespace], namespaced=False)

    def _to_node(self, service: dict) -> Node:
        name = service['metadata']['name']
        node = Node(
            name=name,
            backend=self.name,
            cluster=service['metadata'].get('labels', {}).get(CLUSTER_LABEL, ''),
            state=READY,
        )
        spec = service.get('spec', {})
        if spec.get('type') == 'LoadBalancer':
            try:
                host = ingress_host(service, name)
            except CreateError:
                host = None
            if host:
                node.assign_endpoint(Endpoint(host, self.config.port))
        elif spec.get('ports') and spec['ports'][0].get('nodePort'):
            node.assign_endpoint(Endpoint(self.config.k8s.nodeport_host, int(spec['ports'][0]['nodePort'])))
        return node

    def list(self, cluster: str) -> list[Node]:
        selector = f"app={APP_LABEL},{CLUSTER_LABEL}={cluster}"
        data = self.kubectl.get_json(['get', 'services', '-l', selector])
        return [self._to_node(item) for item in data.get('items', [])]

    def pods(self, name: str) -> list[str]:
        data = self.kubectl.get_json(['get', 'pods', '-l', f"{NODE_LABEL}={name}"])
        return [item['metadata']['name'] for item in data.get('items', [])]

    def read(self, node: Node, path: str, deadline: Deadline) -> bytes:
        args = ['exec', f"deployment/{node.name}", '-c', CONTAINER_NAME, '--', 'cat', path]
        with self.kubectl.stream(args, deadline) as stream:
            return stream.read(timeout=deadline.remaining())

    def logs(self, node: Node, deadline: Deadline) -> RemoteStream:
        tailer = LogTailer(
            what=node.name,
            list_targets=lambda _deadline: self.pods(node.name),
            follow=lambda pod, d: self.kubectl.stream(['logs', '--follow', pod, '-c', CONTAINER_NAME], d),
        )
        return tailer.tail(deadline)
