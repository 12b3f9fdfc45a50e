"""Tests for RemoteNodeManager single, bulk and lifecycle operations."""
import pytest

from conftest import agent_stats
from fleetpanel.errors import (
    InvalidRequestError, NodeInUseError, NodeNotFoundError, NodeNotOnlineError,
    TransportError, UnsupportedTransportError,
)
from fleetpanel.repositories import NodeRepository
from fleetpanel.services.remote_management import RemoteNodeManager


@pytest.fixture
def manager(app, channel):
    return RemoteNodeManager(channel)


@pytest.fixture
def http_node(node_factory, channel):
    node = node_factory(address='10.0.1.1')
    channel.health[node.address] = {'status': 'ok'}
    return node


@pytest.fixture
def ssh_node(node_factory, channel):
    node = node_factory(address='10.0.2.1', transport='ssh', ssh_user='root', ssh_password='pw')
    channel.ssh_results[node.address] = agent_stats(cpu=12.0)
    channel.servers[node.address] = [{'id': 'abc', 'name': 'web', 'status': 'running'}]
    return node


# =============================================================================
# SINGLE-NODE OPERATIONS
# =============================================================================


def test_remote_command_paths(manager, channel, http_node):
    manager.start_remote_server(http_node.id, 7)
    manager.update_remote_server(http_node.id, 7, {'memory': 1024})
    manager.delete_remote_server(http_node.id, 7)
    manager.create_remote_backup(http_node.id, 7)
    result = manager.execute_custom_command(http_node.id, 'uptime', cwd='/srv')

    assert [(m, p) for _, m, p, _ in channel.calls] == [
        ('POST', 'servers/7/start'),
        ('PUT', 'servers/7'),
        ('DELETE', 'servers/7'),
        ('POST', 'backups/7'),
        ('POST', 'system/execute'),
    ]
    assert channel.calls[1][3] == {'memory': 1024}
    assert result['node_name'] == http_node.name
    assert result['endpoint'] == 'system/execute'
    assert result['status'] == 200


def test_command_requires_known_online_node(manager, node_factory):
    offline = node_factory(status='offline')

    with pytest.raises(NodeNotFoundError):
        manager.get_remote_backups(999)
    with pytest.raises(NodeNotOnlineError):
        manager.get_remote_backups(offline.id)


def test_transport_failure_propagates(manager, node_factory):
    node = node_factory(address='10.0.9.9')
    with pytest.raises(TransportError):
        manager.get_remote_network_status(node.id)


def test_ssh_node_serves_stats_and_servers(manager, ssh_node):
    assert manager.get_remote_system_stats(ssh_node.id)['data']['cpu'] == 12.0
    assert manager.get_remote_servers(ssh_node.id)['data'][0]['name'] == 'web'


def test_ssh_node_rejects_http_only_operations(manager, ssh_node):
    with pytest.raises(UnsupportedTransportError):
        manager.restart_remote_server(ssh_node.id, 'abc')


def test_node_status_tolerates_missing_network_status(manager, ssh_node):
    status = manager.get_remote_node_status(ssh_node.id)

    assert status['system_stats']['cpu'] == 12.0
    assert status['network_status'] is None


# =============================================================================
# BULK OPERATIONS
# =============================================================================


def test_bulk_partial_failure_keeps_going(manager, channel, http_node, node_factory):
    offline = node_factory(status='offline')
    channel.stats[http_node.address] = agent_stats()

    result = manager.execute_bulk_operation([offline.id, 999, http_node.id], 'get_stats')

    assert result['total_nodes'] == 3
    assert result['successful'] == 1
    assert result['failed'] == 2
    assert [r['success'] for r in result['results']] == [False, False, True]
    assert {e['node_id'] for e in result['errors']} == {offline.id, 999}


def test_bulk_start_all_only_touches_stopped_servers(manager, channel, http_node):
    channel.servers[http_node.address] = [
        {'id': 1, 'status': 'stopped'},
        {'id': 2, 'status': 'running'},
        {'id': 3, 'status': 'stopped'},
    ]

    result = manager.execute_bulk_operation([http_node.id], 'start_all_servers')

    assert result['successful'] == 1
    started = [p for _, m, p, _ in channel.calls if m == 'POST']
    assert started == ['servers/1/start', 'servers/3/start']


def test_bulk_unknown_operation(manager, http_node):
    with pytest.raises(InvalidRequestError):
        manager.execute_bulk_operation([http_node.id], 'reboot_everything')


def test_sync_pushes_master_and_unassigned_servers(manager, channel, http_node, node_factory, server_factory):
    master = node_factory()
    other = node_factory()
    server_factory(master, name='on-master')
    server_factory(name='floating')
    server_factory(other, name='elsewhere')

    result = manager.sync_server_configurations(master.id, [http_node.id, 999])

    assert result['successful_syncs'] == 1
    ok = result['results'][0]
    assert ok['servers_synced'] == 2
    _, method, path, payload = channel.calls[-1]
    assert (method, path) == ('POST', 'sync/servers')
    assert sorted(s['name'] for s in payload['servers']) == ['floating', 'on-master']
    assert payload['source'] == 'master_sync'
    assert result['results'][1]['success'] is False


def test_collect_node_metrics(manager, channel, http_node, ssh_node):
    channel.stats[http_node.address] = agent_stats(cpu=30.0)
    channel.servers[http_node.address] = [{'id': 1, 'status': 'running'}, {'id': 2, 'status': 'stopped'}]

    result = manager.collect_node_metrics([http_node.id, ssh_node.id, 999])

    assert result['successful_collections'] == 2
    first = result['metrics'][0]
    assert first['system_load'] == 30.0
    assert first['memory_usage'] == pytest.approx(50.0)
    assert (first['active_servers'], first['total_servers']) == (1, 2)
    assert result['metrics'][1]['active_servers'] == 1
    assert result['metrics'][2]['success'] is False


# =============================================================================
# NODE LIFECYCLE
# =============================================================================


def test_register_node_starts_unknown(manager):
    node = manager.register_node('edge-1', '10.3.0.1', 3001, auth_token='t0k')
    assert node.status == 'unknown'
    assert node.endpoint().auth_token == 't0k'


def test_register_node_validates_transport(manager):
    with pytest.raises(InvalidRequestError):
        manager.register_node('edge-1', '10.3.0.1', transport='telnet')


def test_enroll_creates_then_refreshes(manager):
    node, created = manager.enroll_node('10.4.0.1', 3002, {'name': 'agent-a', 'version': '1.2'})
    assert created is True
    assert node.status == 'online'
    assert node.capabilities == {'version': '1.2'}

    NodeRepository().update(node.id, status='offline')
    again, created = manager.enroll_node('10.4.0.1', 3005)

    assert created is False
    assert again.id == node.id
    assert again.status == 'online'
    assert again.port == 3005


def test_delete_node_refuses_while_servers_reference_it(manager, node_factory, server_factory):
    busy = node_factory()
    idle = node_factory()
    server_factory(busy)

    with pytest.raises(NodeInUseError):
        manager.delete_node(busy.id)
    manager.delete_node(idle.id)

    assert NodeRepository().get(idle.id) is None


def test_trust_host_key(manager, channel, ssh_node):
    assert manager.trust_host_key(ssh_node.id, 'SHA256:given')['host_key'] == 'SHA256:given'

    channel.ssh.fingerprints[ssh_node.address] = 'SHA256:presented'
    manager.trust_host_key(ssh_node.id)

    assert NodeRepository().get(ssh_node.id).host_key == 'SHA256:presented'


def test_enroll_does_not_revive_failed_node(manager, node_factory):
    failed = node_factory(address='10.4.0.9', status='failed', consecutive_failures=3)

    node, created = manager.enroll_node('10.4.0.9', 3007, {'version': '2.0'})

    assert created is False
    assert node.id == failed.id
    assert node.status == 'failed'
    assert node.consecutive_failures == 3
    assert node.port == 3007
    assert node.capabilities['version'] == '2.0'
