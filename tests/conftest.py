"""
Shared pytest fixtures for fleetpanel tests.

Every test gets a fresh app on an in-memory SQLite database and runs inside
its app context. Remote nodes are simulated by FakeChannel; nothing touches
the network.
"""
from datetime import timedelta
from typing import Callable

import pytest

from fleetpanel import create_app
from fleetpanel.config import Config
from fleetpanel.errors import TransportError, UnsupportedTransportError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.node import Node, TRANSPORT_SSH
from fleetpanel.models.server import Server
from fleetpanel.repositories import NodeRepository, ServerRepository
from fleetpanel.services.control_plane import ControlPlane
from fleetpanel.services.discovery import Discovery
from fleetpanel.services.failover import FailoverController
from fleetpanel.services.health_monitor import HealthMonitor
from fleetpanel.services.load_balancer import LoadBalancer
from fleetpanel.services.remote_management import RemoteNodeManager
from fleetpanel.services.resource_monitor import ResourceMonitor


class FleetTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    CONTROL_LOOPS_ENABLED = False
    NODE_SOFT_FAILURE_LIMIT = 0
    RESOURCE_RETENTION_DAYS = 7
    RESOURCE_MAX_DATA_POINTS = 1000


# =============================================================================
# FAKE REMOTE NODES
# =============================================================================


def agent_stats(cpu=20.0, total=8 * 1024 ** 3, free=4 * 1024 ** 3, disk_use=40.0) -> dict:
    """A `/system/stats` payload as the node agent sends it."""
    return {
        'cpu': cpu,
        'cpuCount': 4,
        'loadavg': [0.5, 0.4, 0.3],
        'totalmem': total,
        'freemem': free,
        'fsSize': [{
            'fs': '/dev/sda1', 'mount': '/', 'type': 'ext4',
            'size': 100, 'used': disk_use, 'available': 100 - disk_use, 'use': disk_use,
        }],
        'hostname': 'node',
        'platform': 'linux',
        'uptime': 1000,
    }


class FakeSSH:

    def __init__(self):
        self.fingerprints = {}
        self.public_key = 'ssh-rsa AAAAfake fleetpanel'

    def fetch_host_fingerprint(self, endpoint):
        if endpoint.address not in self.fingerprints:
            raise TransportError(f'SSH connection to {endpoint.address} failed')
        return self.fingerprints[endpoint.address]

    def ensure_keypair(self):
        return self.public_key


class FakeChannel:
    """Stands in for RemoteExecutionChannel.

    Per-address behaviour is set with the dicts below; a value that is an
    exception instance is raised instead of returned.
    """

    def __init__(self):
        self.health = {}       # address -> payload
        self.stats = {}        # address -> agent stats payload
        self.ssh_results = {}  # address -> agent-style stats from the SSH probe
        self.servers = {}      # address -> server listing
        self.responses = {}    # (address, method, path) -> response body
        self.calls = []        # (address, method, path, data)
        self.health_calls = []
        self.ssh = FakeSSH()

    @staticmethod
    def _answer(value, what, endpoint):
        if value is None:
            raise TransportError(f'{what} on {endpoint.address} failed: connection refused')
        if isinstance(value, Exception):
            raise value
        return value

    def http_health(self, endpoint, timeout=5, component='HealthMonitor'):
        self.health_calls.append((endpoint.address, timeout, component))
        return self._answer(self.health.get(endpoint.address), 'GET health', endpoint), 12.0

    def http_stats(self, endpoint, timeout=5, component='HealthMonitor'):
        return self._answer(self.stats.get(endpoint.address), 'GET system/stats', endpoint)

    def ssh_stats(self, endpoint):
        return self._answer(self.ssh_results.get(endpoint.address), 'SSH stats', endpoint)

    def system_stats(self, endpoint):
        if endpoint.transport == TRANSPORT_SSH:
            return self.ssh_stats(endpoint)
        return self.http_stats(endpoint)

    def list_servers(self, endpoint):
        if endpoint.transport == TRANSPORT_SSH:
            return self.servers.get(endpoint.address, [])
        return self.call(endpoint, 'GET', 'servers')['data']

    def call(self, endpoint, method, path, data=None):
        if endpoint.transport == TRANSPORT_SSH:
            raise UnsupportedTransportError(f'{method} {path} is not available over SSH')
        self.calls.append((endpoint.address, method, path, data))
        key = (endpoint.address, method, path)
        if key in self.responses:
            return {'status': 200, 'data': self._answer(self.responses[key], f'{method} {path}', endpoint)}
        if path == 'servers' and method == 'GET':
            return {'status': 200, 'data': self.servers.get(endpoint.address, [])}
        if path == 'system/stats' and method == 'GET' and endpoint.address in self.stats:
            return {'status': 200, 'data': self.stats[endpoint.address]}
        if endpoint.address not in self.health:
            raise TransportError(f'{method} {path} on {endpoint.address} failed: connection refused')
        return {'status': 200, 'data': {'success': True}}


# =============================================================================
# APP FIXTURES
# =============================================================================


@pytest.fixture
def app():
    app = create_app(FleetTestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def plane(app, channel) -> ControlPlane:
    """Control plane on the fake channel, installed on the app for route tests."""
    plane = ControlPlane(
        health=HealthMonitor(channel, sleep=lambda _: None),
        resources=ResourceMonitor(channel),
        load_balancer=LoadBalancer(),
        failover=FailoverController(channel),
        discovery=Discovery(channel, networks=lambda: [], sleep=lambda _: None),
        remote=RemoteNodeManager(channel),
    )
    app.extensions['fleetpanel'] = plane
    return plane


@pytest.fixture
def client(app, plane):
    return app.test_client()


# =============================================================================
# FACTORY FIXTURES
# =============================================================================


@pytest.fixture
def node_factory(app) -> Callable[..., Node]:
    """Creates node rows. `seen_ago` (a timedelta) sets last_seen relative to now."""
    nodes = NodeRepository()
    counter = {'n': 0}

    def _create_node(
        name: str | None = None,
        address: str | None = None,
        status: str = 'online',
        seen_ago: timedelta | None = timedelta(seconds=10),
        **fields,
    ) -> Node:
        counter['n'] += 1
        n = counter['n']
        if seen_ago is not None:
            fields.setdefault('last_seen', utcnow() - seen_ago)
        return nodes.add(
            name or f'node-{n}',
            address or f'10.0.0.{n}',
            fields.pop('port', 3001),
            status=status,
            **fields,
        )

    return _create_node


@pytest.fixture
def server_factory(app) -> Callable[..., Server]:
    servers = ServerRepository()
    counter = {'n': 0}

    def _create_server(node: Node | None = None, status: str = 'stopped', name: str | None = None) -> Server:
        counter['n'] += 1
        return servers.add(name or f'server-{counter["n"]}', status, node.id if node else None)

    return _create_server
