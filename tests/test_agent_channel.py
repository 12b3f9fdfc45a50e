"""Tests for the agent HTTP client and the transport-aware channel."""
from datetime import timedelta

import pytest
import requests

from fleetpanel.errors import TransportError, UnsupportedTransportError
from fleetpanel.models.node import NodeEndpoint
from fleetpanel.services.agent import AgentClient
from fleetpanel.services.channel import RemoteExecutionChannel


def _response(status=200, body=b'{"status": "ok"}', url='http://node/api/health'):
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.url = url
    response.elapsed = timedelta(milliseconds=42)
    return response


class RecordingSession:
    def __init__(self, response=None, error=None):
        self.response = response if response is not None else _response()
        self.error = error
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


class StubSSH:
    def __init__(self):
        self.stats_calls = 0

    def get_system_stats(self, endpoint):
        self.stats_calls += 1
        return {'cpu': 1.0}

    def list_servers(self, endpoint):
        return [{'id': 'c1'}]


HTTP = NodeEndpoint(id=1, name='a', address='10.0.0.1', port=3001, auth_token='secret')
SSH = NodeEndpoint(id=2, name='b', address='10.0.0.2', port=3001, transport='ssh', ssh_user='root')


def test_url_and_headers():
    session = RecordingSession()
    client = AgentClient(api_prefix='/api', session=session)

    payload, elapsed = client.health(HTTP, timeout=5)

    assert payload == {'status': 'ok'}
    assert elapsed == pytest.approx(42.0)
    method, url, kwargs = session.requests[0]
    assert (method, url) == ('GET', 'http://10.0.0.1:3001/api/health')
    assert kwargs['timeout'] == 5
    assert kwargs['headers']['X-Node-Auth'] == 'secret'
    assert kwargs['headers']['User-Agent'] == 'FleetPanel-HealthMonitor/1.0'
    assert 'json' not in kwargs


def test_custom_prefix_and_json_body():
    session = RecordingSession()
    client = AgentClient(api_prefix='agent/v2/', session=session)

    client.request(HTTP, 'post', 'servers', data={'name': 'x'})

    method, url, kwargs = session.requests[0]
    assert (method, url) == ('POST', 'http://10.0.0.1:3001/agent/v2/servers')
    assert kwargs['json'] == {'name': 'x'}


def test_connection_errors_become_transport_errors():
    client = AgentClient(session=RecordingSession(error=requests.ConnectionError('refused')))
    with pytest.raises(TransportError):
        client.health(HTTP)


def test_error_status_becomes_transport_error():
    client = AgentClient(session=RecordingSession(response=_response(status=503, body=b'')))
    with pytest.raises(TransportError):
        client.system_stats(HTTP)


def test_channel_routes_by_transport():
    session = RecordingSession(response=_response(body=b'[{"id": 1}]'))
    ssh = StubSSH()
    channel = RemoteExecutionChannel(AgentClient(session=session), ssh)

    assert channel.system_stats(SSH) == {'cpu': 1.0}
    assert channel.list_servers(SSH) == [{'id': 'c1'}]
    assert channel.list_servers(HTTP) == [{'id': 1}]
    assert ssh.stats_calls == 1
    assert len(session.requests) == 1


def test_channel_call_is_http_only():
    channel = RemoteExecutionChannel(AgentClient(session=RecordingSession()), StubSSH())

    with pytest.raises(UnsupportedTransportError):
        channel.call(SSH, 'POST', 'servers/1/start')

    assert channel.call(HTTP, 'POST', 'servers/1/start') == {'status': 200, 'data': {'status': 'ok'}}
