#!/usr/bin/env python3
"""Tests for backends/k8s.py - Kubernetes backend.

Tests verify:
1. kubectl command construction and error mapping
2. Deployment, Service and Secret objects
3. NodePort and LoadBalancer create flows
4. Namespace deletion guard, listing and log tailing
"""

import base64
import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from backends.base import DELIVERY_SECRET, ENDPOINT_ASSIGNED, TIMED_OUT, Endpoint, Node
from backends.k8s import CLUSTER_LABEL, SECRET_NAME, Kubectl, KubernetesBackend
from errors import BackendError, CreateError, TimedOutError, UnsupportedOperationError
from fakes import FakeDeadline, finished_stream, make_config


def _service(name, node_port=None, ingress=None, service_type='NodePort'):
    service = {
        'metadata': {'name': name, 'labels': {'app': 'fleet', CLUSTER_LABEL: 'test', 'node': name}},
        'spec': {'type': service_type, 'ports': [{'port': 443}]},
        'status': {},
    }
    if node_port:
        service['spec']['ports'][0]['nodePort'] = node_port
    if ingress is not None:
        service['status'] = {'loadBalancer': {'ingress': ingress}}
    return service


@pytest.fixture
def k8s_config(tmp_path):
    config = make_config(tmp_path, backend='k8s')
    config.k8s.namespace = 'fleet-test'
    return config


@pytest.fixture
def kubectl():
    kubectl = MagicMock(spec=Kubectl)
    kubectl.create.side_effect = lambda obj: _service(obj['metadata']['name'], node_port=30443) \
        if obj['kind'] == 'Service' else obj
    return kubectl


@pytest.fixture
def backend(k8s_config, kubectl):
    return KubernetesBackend(k8s_config, kubectl=kubectl)


class TestKubectl:

    def test_command_flags(self):
        kubectl = Kubectl(kubeconfig=Path('/etc/kube.conf'), context='ci', namespace='fleet')
        assert kubectl.command(['get', 'pods']) == [
            'kubectl', '--kubeconfig', '/etc/kube.conf', '--context', 'ci',
            '--namespace', 'fleet', 'get', 'pods',
        ]

    def test_cluster_scoped(self):
        assert Kubectl(namespace='fleet').command(['get', 'ns'], namespaced=False) == ['kubectl', 'get', 'ns']

    def test_failure(self):
        with patch('backends.k8s.run_command', return_value=(1, '', 'AlreadyExists')):
            with pytest.raises(BackendError) as exc_info:
                Kubectl().run(['create', '-f', '-'])
        assert 'AlreadyExists' in exc_info.value.message

    def test_create_sends_json(self):
        with patch('backends.k8s.run_command', return_value=(0, '{"kind": "Service"}', '')) as run:
            assert Kubectl().create({'kind': 'Service'}) == {'kind': 'Service'}
        cmd = run.call_args[0][0]
        assert cmd[1:] == ['create', '-f', '-', '-o', 'json']
        assert json.loads(run.call_args[1]['input']) == {'kind': 'Service'}

    def test_get_json_unparseable(self):
        with patch('backends.k8s.run_command', return_value=(0, 'not json', '')):
            with pytest.raises(BackendError):
                Kubectl().get_json(['get', 'services'])


class TestObjects:

    def test_deployment(self, backend):
        deployment = backend.deployment_object('test-00')
        spec = deployment['spec']['template']['spec']
        container, = spec['containers']

        assert deployment['spec']['replicas'] == 1
        assert deployment['metadata']['labels'] == {'app': 'fleet', CLUSTER_LABEL: 'test', 'node': 'test-00'}
        assert container['ports'] == [{'containerPort': 443, 'protocol': 'TCP'}]
        assert {'name': 'authority', 'secret': {'secretName': SECRET_NAME}} in spec['volumes']
        mounts = {m['name']: m for m in container['volumeMounts']}
        assert mounts['authority']['readOnly'] is True

    def test_service_type(self, backend):
        assert backend.service_object('test-00')['spec']['type'] == 'NodePort'
        backend.config.k8s.load_balancer = True
        assert backend.service_object('test-00')['spec']['type'] == 'LoadBalancer'

    def test_secret(self, backend):
        secret = backend.secret_object(b'BUNDLE')
        assert base64.b64decode(secret['data']['fleet.pem']) == b'BUNDLE'

    def test_prepare(self, backend, kubectl):
        backend.prepare(b'BUNDLE')
        (namespace,), ns_kwargs = kubectl.apply.call_args_list[0]
        (secret,), _ = kubectl.apply.call_args_list[1]
        assert namespace['metadata']['name'] == 'fleet-test'
        assert ns_kwargs == {'namespaced': False}
        assert secret['kind'] == 'Secret'

    def test_authority_arrives_by_secret_not_copy(self, backend):
        assert backend.authority_delivery == DELIVERY_SECRET
        with pytest.raises(UnsupportedOperationError) as exc_info:
            backend.install_authority(Node('test-00', 'k8s', 'test'), b'BUNDLE', FakeDeadline())
        assert 'secret' in exc_info.value.message


class TestCreate:

    def test_node_port(self, backend, kubectl):
        deadline = FakeDeadline()

        node = backend.create('test-00', deadline)

        assert node.state == ENDPOINT_ASSIGNED
        assert node.endpoint == Endpoint('localhost', 30443)
        kinds = [call[0][0]['kind'] for call in kubectl.create.call_args_list]
        assert kinds == ['Deployment', 'Service']
        assert deadline.clock.sleeps == []
        kubectl.get_json.assert_not_called()

    def test_node_port_host_configurable(self, backend):
        backend.config.k8s.nodeport_host = '192.168.49.2'
        assert backend.create('test-00', FakeDeadline()).endpoint.host == '192.168.49.2'

    def test_duplicate(self, backend, kubectl):
        kubectl.create.side_effect = BackendError('deployments.apps "test-00" already exists')
        with pytest.raises(CreateError) as exc_info:
            backend.create('test-00', FakeDeadline())
        assert 'already exists' in exc_info.value.message

    def test_missing_node_port(self, backend, kubectl):
        kubectl.create.side_effect = lambda obj: _service('test-00') if obj['kind'] == 'Service' else obj
        with pytest.raises(CreateError):
            backend.create('test-00', FakeDeadline())

    def test_load_balancer(self, backend, kubectl):
        backend.config.k8s.load_balancer = True
        kubectl.get_json.side_effect = [
            _service('test-00', service_type='LoadBalancer'),
            _service('test-00', service_type='LoadBalancer'),
            _service('test-00', service_type='LoadBalancer', ingress=[{'ip': '35.0.0.9'}]),
        ]
        deadline = FakeDeadline()

        node = backend.create('test-00', deadline)

        assert node.endpoint == Endpoint('35.0.0.9', 443)
        assert deadline.clock.sleeps == [1, 2, 90]

    def test_load_balancer_timeout(self, backend, kubectl):
        backend.config.k8s.load_balancer = True
        kubectl.get_json.return_value = _service('test-00', service_type='LoadBalancer')
        with pytest.raises(TimedOutError) as exc_info:
            backend.create('test-00', FakeDeadline())
        assert 'load-balancer' in exc_info.value.message

    def test_limit(self, backend):
        assert backend.max_nodes == 256


class TestDelete:

    def test_delete(self, backend, kubectl):
        backend.delete('test-00', FakeDeadline())
        kubectl.run.assert_called_once_with(['delete', 'deployment,service', 'test-00'])

    def test_namespace(self, backend, kubectl):
        backend.delete_namespace()
        kubectl.run.assert_called_once_with(['delete', 'namespace', 'fleet-test'], namespaced=False)

    @pytest.mark.parametrize('namespace', ['default', 'kube-system'])
    def test_protected_namespace(self, backend, kubectl, namespace):
        backend.config.k8s.namespace = namespace
        with pytest.raises(UnsupportedOperationError):
            backend.delete_namespace()
        kubectl.run.assert_not_called()

    def test_bulk_delete_follows_config(self, backend):
        assert backend.bulk_delete is False
        backend.config.k8s.delete_namespace = True
        assert backend.bulk_delete is True


class TestListAndLogs:

    def test_list(self, backend, kubectl):
        kubectl.get_json.return_value = {'items': [
            _service('test-00', node_port=30001),
            _service('test-01', service_type='LoadBalancer', ingress=[{'hostname': 'lb.example.com'}]),
            _service('test-02', service_type='LoadBalancer'),
        ]}

        nodes = backend.list('test')

        assert kubectl.get_json.call_args[0][0] == ['get', 'services', '-l', f'app=fleet,{CLUSTER_LABEL}=test']
        assert [n.endpoint for n in nodes] == [
            Endpoint('localhost', 30001), Endpoint('lb.example.com', 443), None,
        ]

    def test_pods_by_node_label(self, backend, kubectl):
        kubectl.get_json.return_value = {'items': [
            {'metadata': {'name': 'test-00-7d9f-abcde'}},
            {'metadata': {'name': 'test-00-7d9f-fghij'}},
        ]}

        assert backend.pods('test-00') == ['test-00-7d9f-abcde', 'test-00-7d9f-fghij']
        kubectl.get_json.assert_called_once_with(['get', 'pods', '-l', 'node=test-00'])

    def test_logs_follow_single_pod(self, backend, kubectl):
        kubectl.get_json.return_value = {'items': [{'metadata': {'name': 'test-00-7d9f-abcde'}}]}
        kubectl.stream.return_value = finished_stream(b'serving\n')
        deadline = FakeDeadline()

        stream = backend.logs(Node('test-00', 'k8s', 'test'), deadline)

        assert stream.read() == b'serving\n'
        kubectl.stream.assert_called_once_with(
            ['logs', '--follow', 'test-00-7d9f-abcde', '-c', 'fleet-node'], deadline)

    def test_read(self, backend, kubectl):
        kubectl.stream.return_value = finished_stream(b'test-00\n')
        assert backend.read(Node('test-00', 'k8s', 'test'), '/etc/hostname', FakeDeadline(30)) == b'test-00\n'
        args = kubectl.stream.call_args[0][0]
        assert args == ['exec', 'deployment/test-00', '-c', 'fleet-node', '--', 'cat', '/etc/hostname']


class TestTimedOutState:

    def test_node_marked_timed_out(self, backend, kubectl):
        backend.config.k8s.load_balancer = True
        backend.config.k8s.lb_timeout = 4
        kubectl.get_json.return_value = _service('test-00', service_type='LoadBalancer')
        states = []
        real_fail = Node.fail

        def record(node, state, message):
            states.append(state)
            real_fail(node, state, message)

        with patch.object(Node, 'fail', record):
            with pytest.raises(TimedOutError):
                backend.create('test-00', FakeDeadline())
        assert states == [TIMED_OUT]
