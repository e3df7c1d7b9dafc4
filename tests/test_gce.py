#!/usr/bin/env python3
"""Tests for backends/gce.py - Compute Engine backend.

Tests verify:
1. REST client error mapping and pagination
2. Instance request body
3. Create flow: insert, operation, external address, endpoint
4. Listing, authority copy and reads over ssh
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import requests
import yaml
from backends.base import ENDPOINT_ASSIGNED, FAILED, Endpoint, Node
from backends.gce import CLUSTER_LABEL, ComputeClient, ComputeEngineBackend, TOKEN_ENV, access_token
from errors import BackendError, ConfigurationError, CreateError, FleetError, TimedOutError
from fakes import FakeDeadline, finished_stream


def _response(status=200, body=None):
    resp = MagicMock(status_code=status)
    resp.content = b'{}' if body is not None else b''
    resp.json.return_value = body
    resp.text = str(body)
    return resp


def _instance(name, ip='34.1.2.3', cluster='test', status='RUNNING', tags=None):
    instance = {
        'name': name,
        'status': status,
        'networkInterfaces': [{'accessConfigs': [{'natIP': ip}]}],
        'tags': {'items': tags or []},
    }
    if cluster is not None:
        instance['labels'] = {CLUSTER_LABEL: cluster}
    return instance


@pytest.fixture
def client():
    client = MagicMock(spec=ComputeClient)
    client.project_number.return_value = '123456'
    client.insert_instance.return_value = {'name': 'op-1'}
    client.get_operation.return_value = {'status': 'DONE'}
    client.get_instance.return_value = _instance('test-00')
    return client


@pytest.fixture
def executor():
    return MagicMock()


@pytest.fixture
def backend(fleet_config, client, executor):
    return ComputeEngineBackend(fleet_config, client=client, executor=executor)


class TestAccessToken:

    def test_from_environment(self):
        with patch.dict('os.environ', {TOKEN_ENV: 'tok'}):
            assert access_token() == 'tok'

    def test_from_gcloud(self):
        with patch.dict('os.environ', {}, clear=True), \
                patch('backends.gce.run_command', return_value=(0, 'tok2\n', '')) as run:
            assert access_token() == 'tok2'
        assert run.call_args[0][0] == ['gcloud', 'auth', 'print-access-token']

    def test_gcloud_failure(self):
        with patch.dict('os.environ', {}, clear=True), \
                patch('backends.gce.run_command', return_value=(1, '', 'not logged in')):
            with pytest.raises(BackendError) as exc_info:
                access_token()
        assert 'not logged in' in exc_info.value.message


class TestComputeClient:

    def test_bearer_token_and_url(self):
        session = MagicMock()
        session.request.return_value = _response(body={'name': 'i'})
        client = ComputeClient('proj', 'us-west1-c', session=session, token='tok')

        assert client.get_instance('i') == {'name': 'i'}

        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url.endswith('/projects/proj/zones/us-west1-c/instances/i')
        assert session.request.call_args[1]['headers'] == {'Authorization': 'Bearer tok'}

    def test_http_error(self):
        session = MagicMock()
        session.request.return_value = _response(409, {'error': {'message': 'already exists'}})
        client = ComputeClient('proj', 'zone', session=session, token='tok')
        with pytest.raises(BackendError) as exc_info:
            client.insert_instance({'name': 'i'})
        assert exc_info.value.status == 409
        assert 'already exists' in exc_info.value.message

    def test_transport_error(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError('down')
        client = ComputeClient('proj', 'zone', session=session, token='tok')
        with pytest.raises(BackendError):
            client.get_operation('op')

    def test_list_follows_pages(self):
        session = MagicMock()
        session.request.side_effect = [
            _response(body={'items': [{'name': 'a'}], 'nextPageToken': 'p2'}),
            _response(body={'items': [{'name': 'b'}]}),
        ]
        client = ComputeClient('proj', 'zone', session=session, token='tok')

        assert [i['name'] for i in client.list_instances()] == ['a', 'b']
        assert session.request.call_args_list[1][1]['params'] == {'pageToken': 'p2'}

    def test_project_number_cached(self):
        session = MagicMock()
        session.request.return_value = _response(body={'projectNumber': 42})
        client = ComputeClient('proj', 'zone', session=session, token='tok')
        assert client.project_number() == '42'
        assert client.project_number() == '42'
        assert session.request.call_count == 1


class TestInstanceBody:

    def test_fields(self, backend):
        body = backend.instance_body('test-00')

        assert body['name'] == 'test-00'
        assert body['labels'] == {CLUSTER_LABEL: 'test'}
        assert body['machineType'].endswith('/zones/us-west1-c/machineTypes/f1-micro')
        assert {'http-server', 'https-server'} <= set(body['tags']['items'])
        assert body['networkInterfaces'][0]['accessConfigs'][0]['type'] == 'ONE_TO_ONE_NAT'
        assert body['serviceAccounts'][0]['email'] == '123456-compute@developer.gserviceaccount.com'
        assert body['disks'][0]['initializeParams']['sourceImage'] == \
            'projects/cos-cloud/global/images/family/cos-stable'

    def test_container_declaration(self, backend):
        items = {item['key']: item['value'] for item in backend.instance_body('test-00')['metadata']['items']}
        manifest = yaml.safe_load(items['gce-container-declaration'])
        container, = manifest['spec']['containers']
        assert container['image'] == 'gcr.io/test-project/fleet-node:v1'
        assert items['google-logging-enabled'] == 'true'

    def test_missing_project(self, backend):
        backend.config.gce.project = ''
        with pytest.raises(ConfigurationError) as exc_info:
            backend.instance_body('test-00')
        assert 'project' in exc_info.value.message

    def test_missing_image(self, backend):
        backend.config.image = ''
        with pytest.raises(ConfigurationError):
            backend.instance_body('test-00')


class TestCreate:

    def test_flow(self, backend, client):
        client.get_operation.side_effect = [{'status': 'PENDING'}, {'status': 'RUNNING'}]
        client.get_instance.side_effect = [_instance('test-00', ip=None), _instance('test-00')]
        deadline = FakeDeadline()

        node = backend.create('test-00', deadline)

        assert node.state == ENDPOINT_ASSIGNED
        assert node.endpoint == Endpoint('34.1.2.3', 443)
        client.get_operation.assert_called_with('op-1')
        assert deadline.clock.sleeps == [0.25, 0.25]

    def test_insert_rejected(self, backend, client):
        client.insert_instance.side_effect = BackendError('quota exceeded', status=403)
        with pytest.raises(CreateError) as exc_info:
            backend.create('test-00', FakeDeadline())
        assert exc_info.value.name == 'test-00'
        client.get_operation.assert_not_called()

    def test_project_lookup_failure(self, backend, client):
        client.project_number.side_effect = BackendError('GET projects/test-project: 403', status=403)
        states = []
        real_fail = Node.fail

        def record(node, state, message):
            states.append(state)
            real_fail(node, state, message)

        with patch.object(Node, 'fail', record):
            with pytest.raises(CreateError) as exc_info:
                backend.create('test-00', FakeDeadline())
        assert exc_info.value.name == 'test-00'
        assert states == [FAILED]
        client.insert_instance.assert_not_called()

    def test_operation_error(self, backend, client):
        client.get_operation.return_value = {'status': 'DONE', 'error': {'errors': [{'message': 'ZONE_RESOURCE_POOL_EXHAUSTED'}]}}
        with pytest.raises(CreateError) as exc_info:
            backend.create('test-00', FakeDeadline())
        assert 'ZONE_RESOURCE_POOL_EXHAUSTED' in exc_info.value.message

    def test_address_timeout(self, backend, client):
        client.get_instance.return_value = _instance('test-00', ip=None)
        deadline = FakeDeadline()
        with pytest.raises(TimedOutError):
            backend.create('test-00', deadline)
        assert deadline.clock.now == pytest.approx(5)

    def test_delete_waits_for_operation(self, backend, client):
        client.delete_instance.return_value = {'name': 'op-2'}
        backend.delete('test-00', FakeDeadline())
        client.delete_instance.assert_called_once_with('test-00')
        client.get_operation.assert_called_with('op-2')


class TestList:

    def test_filters_by_cluster_label(self, backend, client):
        client.list_instances.return_value = [
            _instance('test-00'),
            _instance('other-00', cluster='other'),
            _instance('test-01', status='PROVISIONING', ip=None),
        ]
        nodes = backend.list('test')

        assert [n.name for n in nodes] == ['test-00', 'test-01']
        assert nodes[0].endpoint == Endpoint('34.1.2.3', 443)
        assert nodes[1].endpoint is None

    def test_unlabelled_matched_by_tag(self, backend, client):
        client.list_instances.return_value = [
            _instance('legacy-00', cluster=None, tags=['fleet']),
            _instance('stray-00', cluster=None),
        ]
        assert [n.name for n in backend.list('test')] == ['legacy-00']


class TestRemoteAccess:

    def _node(self):
        node = Node('test-00', 'gce', 'test', state='ready')
        node.assign_endpoint(Endpoint('34.1.2.3', 443))
        return node

    def test_install_authority(self, backend, executor, fleet_config):
        deadline = FakeDeadline()
        backend.install_authority(self._node(), b'BUNDLE', deadline)
        executor.copy.assert_called_once_with('34.1.2.3', fleet_config.authority_dir, 'fleet.pem',
                                              b'BUNDLE', deadline)

    def test_read(self, backend, executor):
        executor.read_file.return_value = finished_stream(b'test-00\n')
        assert backend.read(self._node(), '/etc/hostname', FakeDeadline(30)) == b'test-00\n'

    def test_no_endpoint(self, backend):
        with pytest.raises(FleetError) as exc_info:
            backend.read(Node('test-00', 'gce', 'test'), '/etc/hostname', FakeDeadline())
        assert "no endpoint" in exc_info.value.message
