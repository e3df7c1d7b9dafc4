"""Compute Engine backend: one container-optimized VM instance per node.

Instances boot the node image through the container runtime manifest
passed as `gce-container-declaration` metadata. Requests go to the
Compute Engine REST API with a bearer token from the environment or from
`gcloud auth print-access-token`.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

import requests

from backends.base import (
    ACCEPTED,
    DELIVERY_COPY,
    FAILED,
    READY,
    TIMED_OUT,
    Backend,
    Endpoint,
    Node,
)
from backends.manifest import node_manifest
from common import Deadline, run_command
from config import FleetConfig
from errors import BackendError, ConfigurationError, CreateError, FleetError, TimedOutError
from readiness import external_ip, wait_for_external_ip, wait_for_operation
from remote.executor import RemoteExecutor
from remote.stream import RemoteStream
from remote.tail import container_tailer

logger = logging.getLogger(__name__)

COMPUTE_URL = 'https://compute.googleapis.com/compute/v1'
RESOURCE_MANAGER_URL = 'https://cloudresourcemanager.googleapis.com/v1'
TOKEN_ENV = 'GOOGLE_OAUTH_ACCESS_TOKEN'
CLUSTER_LABEL = 'fleet-cluster'
CONTAINER_NAME = 'fleet-node'
REQUEST_TIMEOUT = 30

SCOPES = [
    'https://www.googleapis.com/auth/devstorage.read_only',
    'https://www.googleapis.com/auth/logging.write',
    'https://www.googleapis.com/auth/monitoring.write',
    'https://www.googleapis.com/auth/servicecontrol',
    'https://www.googleapis.com/auth/service.management.readonly',
    'https://www.googleapis.com/auth/trace.append',
]


def access_token() -> str:
    """OAuth token from $GOOGLE_OAUTH_ACCESS_TOKEN or the gcloud CLI."""
    if token := os.environ.get(TOKEN_ENV):
        return token
    rc, out, err = run_command(['gcloud', 'auth', 'print-access-token'], timeout=60)
    if rc != 0 or not out.strip():
        raise BackendError(f"Unable to obtain an access token from gcloud: {err.strip() or 'empty output'}")
    return out.strip()


class ComputeClient:
    """Minimal Compute Engine REST client for one project and zone."""

    def __init__(
        self,
        project: str,
        zone: str,
        session: Optional[requests.Session] = None,
        token: Optional[str] = None,
    ):
        self.project = project
        self.zone = zone
        self.session = session or requests.Session()
        self._token = token
        self._project_number: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def zone_url(self) -> str:
        return f"{COMPUTE_URL}/projects/{self.project}/zones/{self.zone}"

    def _headers(self) -> dict:
        with self._lock:
            if self._token is None:
                self._token = access_token()
            return {'Authorization': f"Bearer {self._token}"}

    def _request(self, method: str, url: str, **kwargs) -> dict:
        """Send a request and return the decoded body.

        Raises:
            BackendError: On transport errors or HTTP status >= 400
        """
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{method} {url}: {e}") from e

        if resp.status_code >= 400:
            try:
                message = resp.json().get('error', {}).get('message', resp.text)
            except ValueError:
                message = resp.text
            raise BackendError(f"{method} {url}: {resp.status_code} {message}", status=resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def project_number(self) -> str:
        """Numeric project id, looked up once."""
        if self._project_number is None:
            data = self._request('GET', f"{RESOURCE_MANAGER_URL}/projects/{self.project}")
            self._project_number = str(data['projectNumber'])
        return self._project_number

    def insert_instance(self, body: dict) -> dict:
        return self._request('POST', f"{self.zone_url}/instances", json=body)

    def get_operation(self, name: str) -> dict:
        return self._request('GET', f"{self.zone_url}/operations/{name}")

    def get_instance(self, name: str) -> dict:
        return self._request('GET', f"{self.zone_url}/instances/{name}")

    def delete_instance(self, name: str) -> dict:
        return self._request('DELETE', f"{self.zone_url}/instances/{name}")

    def list_instances(self) -> list[dict]:
        """All instances in the zone, following pagination."""
        items: list[dict] = []
        params: dict = {}
        while True:
            data = self._request('GET', f"{self.zone_url}/instances", params=params)
            items.extend(data.get('items', []))
            if not data.get('nextPageToken'):
                return items
            params['pageToken'] = data['nextPageToken']


class ComputeEngineBackend(Backend):
    """Backend that runs each node as a Compute Engine instance."""

    name = 'gce'
    authority_delivery = DELIVERY_COPY

    def __init__(
        self,
        config: FleetConfig,
        client: Optional[ComputeClient] = None,
        executor: Optional[RemoteExecutor] = None,
    ):
        super().__init__(config)
        self.client = client or ComputeClient(config.gce.project, config.gce.zone)
        self.executor = executor or RemoteExecutor(
            user=config.ssh.user,
            key=config.ssh.key,
            connect_timeout=config.ssh.connect_timeout,
        )

    def instance_body(self, name: str) -> dict:
        """Instance insert request for one node.

        Raises:
            ConfigurationError: If a required identifier is missing
        """
        gce = self.config.gce
        for label, value in (('project', gce.project), ('zone', gce.zone),
                             ('image', self.config.image), ('name', name),
                             ('authority_dir', self.config.authority_dir)):
            if not value:
                raise ConfigurationError(f"gce: {label} is required")

        manifest = node_manifest(
            image=self.config.image,
            system=self.name,
            port=self.config.port,
            authority_dir=self.config.authority_dir,
            extra_env={'PROJECT': gce.project, 'ZONE': gce.zone},
            container_name=CONTAINER_NAME,
        )
        return {
            'name': name,
            'machineType': f"projects/{gce.project}/zones/{gce.zone}/machineTypes/{gce.machine_type}",
            'labels': {CLUSTER_LABEL: self.cluster},
            'metadata': {
                'items': [
                    {'key': 'gce-container-declaration', 'value': manifest.to_yaml()},
                    {'key': 'google-logging-enabled', 'value': 'true'},
                ],
            },
            'disks': [{
                'autoDelete': True,
                'boot': True,
                'initializeParams': {
                    'sourceImage': f"projects/{gce.image_project}/global/images/family/{gce.image_family}",
                },
            }],
            'tags': {'items': [gce.network_tag, 'http-server', 'https-server']},
            'networkInterfaces': [{
                'accessConfigs': [{'type': 'ONE_TO_ONE_NAT', 'name': 'External NAT'}],
            }],
            'serviceAccounts': [{
                'email': f"{self.client.project_number()}-compute@developer.gserviceaccount.com",
                'scopes': SCOPES,
            }],
        }

    def create(self, name: str, deadline: Deadline) -> Node:
        gce = self.config.gce
        node = Node(name=name, backend=self.name, cluster=self.cluster)

        logger.info("[%s] being created", name)
        try:
            operation = self.client.insert_instance(self.instance_body(name))
        except BackendError as e:
            node.fail(FAILED, e.message)
            raise CreateError(name, e.message) from e
        node.transition(ACCEPTED)
        logger.info("[%s] tagged [HTTP|HTTPS] to be caught by default firewall rules", name)

        try:
            wait_for_operation(
                lambda: self.client.get_operation(operation['name']), name,
                interval=gce.poll_interval, timeout=gce.operation_timeout, deadline=deadline,
            )
            node.transition(READY)
            host = wait_for_external_ip(
                lambda: self.client.get_instance(name), name,
                interval=gce.poll_interval, timeout=gce.address_timeout, deadline=deadline,
            )
        except TimedOutError as e:
            node.fail(TIMED_OUT, e.message)
            raise
        except CreateError as e:
            node.fail(FAILED, e.message)
            raise
        except BackendError as e:
            node.fail(FAILED, e.message)
            raise CreateError(name, e.message) from e

        node.assign_endpoint(Endpoint(host, self.config.port))
        logger.info("[%s] created (%s)", name, node.endpoint.url)
        return node

    def delete(self, name: str, deadline: Deadline) -> None:
        logger.info("[%s] being deleted", name)
        operation = self.client.delete_instance(name)
        try:
            wait_for_operation(
                lambda: self.client.get_operation(operation['name']), name,
                interval=self.config.gce.poll_interval, timeout=self.config.gce.operation_timeout,
                deadline=deadline,
            )
        except CreateError as e:
            raise BackendError(f"delete {e.message}") from e
        logger.info("[%s] deleted", name)

    def _to_node(self, instance: dict) -> Node:
        name = instance['name']
        node = Node(
            name=name,
            backend=self.name,
            cluster=instance.get('labels', {}).get(CLUSTER_LABEL, ''),
            state=READY if instance.get('status') == 'RUNNING' else ACCEPTED,
        )
        try:
            host = external_ip(instance, name)
        except CreateError:
            host = None
        if host and node.state == READY:
            node.assign_endpoint(Endpoint(host, self.config.port))
        return node

    def list(self, cluster: str) -> list[Node]:
        """Instances labelled with the cluster (or, unlabelled, carrying its network tag)."""
        nodes = []
        for instance in self.client.list_instances():
            labels = instance.get('labels') or {}
            tags = (instance.get('tags') or {}).get('items') or []
            if CLUSTER_LABEL in labels:
                if labels[CLUSTER_LABEL] != cluster:
                    continue
            elif self.config.gce.network_tag not in tags:
                continue
            nodes.append(self._to_node(instance))
        return nodes

    def _host(self, node: Node) -> str:
        if node.endpoint is None:
            raise FleetError(f"{node.name}: no endpoint assigned")
        return node.endpoint.host

    def install_authority(self, node: Node, bundle: bytes, deadline: Deadline) -> None:
        self.executor.copy(self._host(node), self.config.authority_dir, self.config.authority_file,
                           bundle, deadline)
        logger.info("[%s] authority installed", node.name)

    def read(self, node: Node, path: str, deadline: Deadline) -> bytes:
        with self.executor.read_file(self._host(node), path, deadline) as stream:
            return stream.read(timeout=deadline.remaining())

    def logs(self, node: Node, deadline: Deadline) -> RemoteStream:
        return container_tailer(self.executor, self._host(node), CONTAINER_NAME).tail(deadline)

