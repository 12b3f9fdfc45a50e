"""
Remote node manager: the front door for operations against nodes.

Single operations raise; bulk helpers run node after node and collect
errors next to results so one bad node never aborts the rest.
"""
import logging

from fleetpanel.errors import FleetError, InvalidRequestError, NodeNotOnlineError
from fleetpanel.models import utcnow
from fleetpanel.models.node import Node, STATUS_FAILED, STATUS_ONLINE, TRANSPORT_HTTP, TRANSPORT_SSH
from fleetpanel.repositories import NodeRepository, ServerRepository
from fleetpanel.services.channel import RemoteExecutionChannel
from fleetpanel.services.telemetry import normalize_stats, usage_percent

log = logging.getLogger(__name__)

BULK_OPERATIONS = ('get_stats', 'get_servers', 'start_all_servers', 'stop_all_servers', 'restart_all_servers')


def _servers_of(result: dict) -> list:
    data = result.get('data')
    return data if isinstance(data, list) else []


class RemoteNodeManager:

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        nodes: NodeRepository | None = None,
        servers: ServerRepository | None = None,
    ):
        self.channel = channel
        self.nodes = nodes or NodeRepository()
        self.servers = servers or ServerRepository()

    # ── Node lifecycle ─────────────────────────────────────────────────────

    def register_node(self, name: str, address: str, port: int = 3001, transport: str = TRANSPORT_HTTP,
                      **credentials) -> Node:
        if transport not in (TRANSPORT_HTTP, TRANSPORT_SSH):
            raise InvalidRequestError(f'Unknown transport: {transport}')
        if not name or not address:
            raise InvalidRequestError('name and address are required')
        node = self.nodes.add(name, address, port, transport=transport, **credentials)
        log.info('Registered node %s at %s:%s (%s)', name, address, port, transport)
        return node

    def enroll_node(self, address: str, port: int = 3001, metadata: dict | None = None) -> tuple[Node, bool]:
        """Agent-initiated registration. Returns (node, created)."""
        metadata = metadata or {}
        now = utcnow()
        capabilities = {'version': metadata['version']} if metadata.get('version') else None

        existing = self.nodes.by_address(address)
        if existing is not None:
            fields = {'last_seen': now, 'port': port}
            if existing.status != STATUS_FAILED:
                fields.update(status=STATUS_ONLINE, consecutive_failures=0)
            if capabilities:
                fields['capabilities'] = {**(existing.capabilities or {}), **capabilities}
            self.nodes.update(existing.id, **fields)
            log.info('Node %s re-enrolled from %s:%s', existing.name, address, port)
            return self.nodes.get(existing.id), False

        name = metadata.get('name') or f'Node ({address})'
        node = self.nodes.add(name, address, port, status=STATUS_ONLINE, last_seen=now,
                              auth_token=metadata.get('auth_token'), capabilities=capabilities)
        log.info('Enrolled new node %s at %s:%s', name, address, port)
        return node, True

    def delete_node(self, node_id) -> None:
        self.nodes.delete(node_id)
        log.info('Deleted node %s', node_id)

    def trust_host_key(self, node_id, fingerprint: str | None = None) -> dict:
        """Stores the SSH host key fingerprint the user decided to trust.

        Without a fingerprint the key the host presents right now is trusted.
        """
        node = self.nodes.require(node_id)
        if not fingerprint:
            fingerprint = self.channel.ssh.fetch_host_fingerprint(node.endpoint())
        self.nodes.update(node.id, host_key=fingerprint)
        log.info('Trusted host key %s for node %s', fingerprint, node.name)
        return {'node_id': node.id, 'host_key': fingerprint}

    # ── Single-node operations ───────────────────────────────────────────

    def _online_node(self, node_id) -> Node:
        node = self.nodes.require(node_id)
        if node.status != STATUS_ONLINE:
            raise NodeNotOnlineError(node_id, node.status)
        return node

    def execute_remote_command(self, node_id, path: str, method: str = 'GET', data=None) -> dict:
        node = self._online_node(node_id)
        log.info('Executing %s %s on node %s', method, path, node.name)
        try:
            response = self.channel.call(node.endpoint(), method, path, data)
        except FleetError as e:
            log.error('Failed to execute command on node %s: %s', node_id, e)
            raise
        return {
            'node_id': node.id,
            'node_name': node.name,
            'endpoint': path,
            'method': method,
            'status': response['status'],
            'data': response['data'],
        }

    def get_remote_system_stats(self, node_id) -> dict:
        node = self._online_node(node_id)
        if node.transport != TRANSPORT_SSH:
            return self.execute_remote_command(node_id, 'system/stats')
        stats = self.channel.system_stats(node.endpoint())
        return {'node_id': node.id, 'node_name': node.name, 'endpoint': 'system/stats',
                'method': 'GET', 'status': 200, 'data': stats}

    def get_remote_servers(self, node_id) -> dict:
        node = self._online_node(node_id)
        if node.transport != TRANSPORT_SSH:
            return self.execute_remote_command(node_id, 'servers')
        servers = self.channel.list_servers(node.endpoint())
        return {'node_id': node.id, 'node_name': node.name, 'endpoint': 'servers',
                'method': 'GET', 'status': 200, 'data': servers}

    def start_remote_server(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}/start', 'POST')

    def stop_remote_server(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}/stop', 'POST')

    def restart_remote_server(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}/restart', 'POST')

    def create_remote_server(self, node_id, server_data: dict) -> dict:
        return self.execute_remote_command(node_id, 'servers', 'POST', server_data)

    def update_remote_server(self, node_id, server_id, server_data: dict) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}', 'PUT', server_data)

    def delete_remote_server(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}', 'DELETE')

    def get_remote_server_logs(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'servers/{server_id}/logs')

    def get_remote_backups(self, node_id) -> dict:
        return self.execute_remote_command(node_id, 'backups')

    def create_remote_backup(self, node_id, server_id) -> dict:
        return self.execute_remote_command(node_id, f'backups/{server_id}', 'POST')

    def get_remote_network_status(self, node_id) -> dict:
        return self.execute_remote_command(node_id, 'network/status')

    def execute_custom_command(self, node_id, command: str, cwd: str | None = None) -> dict:
        return self.execute_remote_command(node_id, 'system/execute', 'POST', {'command': command, 'cwd': cwd})

    def get_remote_node_status(self, node_id) -> dict:
        stats = self.get_remote_system_stats(node_id)
        servers = self.get_remote_servers(node_id)
        try:
            network = self.get_remote_network_status(node_id)['data']
        except FleetError as e:
            log.info('Network status unavailable for node %s: %s', node_id, e)
            network = None
        return {
            'node_id': node_id,
            'system_stats': stats['data'],
            'servers': servers['data'],
            'network_status': network,
            'last_updated': utcnow().isoformat(),
        }

    # ── Multi-node operations ────────────────────────────────────────────

    def _run_bulk(self, node_id, operation: str):
        if operation == 'get_stats':
            return self.get_remote_system_stats(node_id)
        if operation == 'get_servers':
            return self.get_remote_servers(node_id)

        servers = _servers_of(self.get_remote_servers(node_id))
        if operation == 'start_all_servers':
            return [self.start_remote_server(node_id, s['id']) for s in servers if s.get('status') == 'stopped']
        if operation == 'stop_all_servers':
            return [self.stop_remote_server(node_id, s['id']) for s in servers if s.get('status') == 'running']
        return [self.restart_remote_server(node_id, s['id']) for s in servers if s.get('status') == 'running']

    def execute_bulk_operation(self, node_ids: list, operation: str, params: dict | None = None) -> dict:
        if operation not in BULK_OPERATIONS:
            raise InvalidRequestError(f'Unknown bulk operation: {operation}')

        results = []
        errors = []
        for node_id in node_ids:
            try:
                result = self._run_bulk(node_id, operation)
            except FleetError as e:
                log.error('Bulk operation %s failed on node %s: %s', operation, node_id, e)
                errors.append({'node_id': node_id, 'operation': operation, 'error': str(e)})
                results.append({'node_id': node_id, 'operation': operation, 'success': False, 'error': str(e)})
                continue
            results.append({'node_id': node_id, 'operation': operation, 'success': True, 'result': result})

        return {
            'operation': operation,
            'total_nodes': len(node_ids),
            'successful': sum(1 for r in results if r['success']),
            'failed': len(errors),
            'results': results,
            'errors': errors,
        }

    def sync_server_configurations(self, master_node_id, target_node_ids: list) -> dict:
        """Pushes the master's servers (plus unassigned ones) to every target."""
        payload = {
            'servers': [s.to_dict() for s in self.servers.for_sync(master_node_id)],
            'source': 'master_sync',
            'timestamp': utcnow().isoformat(),
        }

        results = []
        for target_id in target_node_ids:
            try:
                result = self.execute_remote_command(target_id, 'sync/servers', 'POST', payload)
            except FleetError as e:
                log.error('Failed to sync servers to node %s: %s', target_id, e)
                results.append({'target_node_id': target_id, 'success': False, 'error': str(e)})
                continue
            results.append({
                'target_node_id': target_id,
                'success': True,
                'servers_synced': len(payload['servers']),
                'result': result,
            })

        return {
            'master_node_id': master_node_id,
            'target_nodes': len(target_node_ids),
            'successful_syncs': sum(1 for r in results if r['success']),
            'results': results,
        }

    def collect_node_metrics(self, node_ids: list) -> dict:
        metrics = []
        for node_id in node_ids:
            collected_at = utcnow().isoformat()
            try:
                status = self.get_remote_node_status(node_id)
            except FleetError as e:
                log.error('Failed to collect metrics for node %s: %s', node_id, e)
                metrics.append({'node_id': node_id, 'collected_at': collected_at,
                                'error': str(e), 'success': False})
                continue

            stats = status['system_stats']
            snapshot = normalize_stats(stats if isinstance(stats, dict) else {}, node_id)
            servers = status['servers'] if isinstance(status['servers'], list) else []
            metrics.append({
                'node_id': node_id,
                'collected_at': collected_at,
                'system_load': usage_percent(snapshot, 'cpu') or 0,
                'memory_usage': usage_percent(snapshot, 'memory') or 0,
                'active_servers': sum(1 for s in servers if s.get('status') == 'running'),
                'total_servers': len(servers),
                'network_status': status['network_status'],
                'success': True,
            })

        return {
            'collected_at': utcnow().isoformat(),
            'nodes_monitored': len(node_ids),
            'successful_collections': sum(1 for m in metrics if m['success']),
            'metrics': metrics,
        }
