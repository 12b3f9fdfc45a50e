"""
Failover controller.

Watches offline/failing nodes in the registry, moves the servers of a failed
node onto online nodes (round-robin) and parks the node in 'failed' until
someone recovers it by hand. Migrated servers are left stopped on their new
node; only the ownership pointer moves.
"""
import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from fleetpanel.errors import FleetError, NodeUnreachableError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.node import Node, STATUS_FAILED, STATUS_FAILING, STATUS_OFFLINE, STATUS_ONLINE
from fleetpanel.repositories import FailoverEventRepository, NodeRepository, ServerRepository
from fleetpanel.services.channel import RemoteExecutionChannel
from fleetpanel.services.load_balancer import round_robin, NodeMetrics

log = logging.getLogger(__name__)

FAILOVER_THRESHOLD = 3
STALE_AFTER = timedelta(minutes=5)
HISTORY_WINDOW = timedelta(hours=24)


class FailoverController:

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        nodes: NodeRepository | None = None,
        servers: ServerRepository | None = None,
        events: FailoverEventRepository | None = None,
        recovery_timeout: float = 5,
    ):
        self.channel = channel
        self.nodes = nodes or NodeRepository()
        self.servers = servers or ServerRepository()
        self.events = events or FailoverEventRepository()
        self.recovery_timeout = recovery_timeout

    def should_failover(self, node: Node) -> bool:
        now = utcnow()
        if node.last_seen is None or now - node.last_seen > STALE_AFTER:
            return True
        if node.status == STATUS_FAILING:
            recent = self.events.count_since(node.id, now - HISTORY_WINDOW)
            return recent >= FAILOVER_THRESHOLD
        return False

    def execute_failover(self, node: Node) -> dict:
        node_id = node.id
        try:
            return self._execute(node)
        except Exception as e:
            db.session.rollback()
            log.error('Failed to execute failover for node %s: %s', node_id, e)
            self.events.record(node_id, 'error', {'error': str(e)})
            raise

    def _execute(self, node: Node) -> dict:
        node_id, node_name = node.id, node.name
        servers = self.servers.owned_by(node_id)
        if not servers:
            log.info('No servers to migrate for node %s', node_name)
            self.events.record(node_id, 'completed', {'message': 'No servers to migrate'}, 0)
            return {'migrated': 0, 'message': 'No servers to migrate'}

        targets = self.nodes.online(exclude_id=node_id)
        if not targets:
            log.error('No available nodes for failover of %s', node_name)
            self.events.record(node_id, 'failed', {'message': 'No available nodes for failover'}, len(servers))
            return {'migrated': 0, 'message': 'No available nodes for failover'}

        log.info('Migrating %d servers from failed node %s', len(servers), node_name)

        # The node is unreachable, so stopping is a registry-only change.
        for server in servers:
            if server.status == 'running':
                self.servers.mark_stopped(server.id)
                log.info('Marked server %s as stopped on failed node', server.name)

        candidates = [NodeMetrics(id=t.id, name=t.name) for t in targets]
        assignments = round_robin(candidates, servers)

        migrated = failed = 0
        for assignment in assignments:
            try:
                if self.servers.assign(assignment['server_id'], assignment['node_id']):
                    migrated += 1
                    log.info('Migrated server %s to node %s',
                             assignment['server_name'], assignment['node_name'])
                else:
                    failed += 1
                    log.warning('Server %s vanished during migration', assignment['server_name'])
            except SQLAlchemyError as e:
                db.session.rollback()
                failed += 1
                log.error('Failed to migrate server %s: %s', assignment['server_name'], e)

        status = 'completed' if failed == 0 else 'partial'
        self.events.record(node_id, status, {
            'migrated': migrated,
            'failed': failed,
            'total': len(servers),
            'target_nodes': len(targets),
        }, len(servers))

        self.nodes.update(node_id, status=STATUS_FAILED)

        return {
            'migrated': migrated,
            'failed': failed,
            'total': len(servers),
            'available_nodes': len(targets),
            'assignments': [{k: a[k] for k in ('server_id', 'server_name', 'node_id', 'node_name')}
                            for a in assignments],
        }

    def monitor_and_failover(self) -> dict:
        candidates = self.nodes.with_status(STATUS_OFFLINE, STATUS_FAILING)
        if not candidates:
            return {'monitored': 0, 'failed_over': 0, 'message': 'No nodes requiring failover'}

        log.info('Monitoring %d potentially failing nodes', len(candidates))
        failed_over = 0
        for node in candidates:
            try:
                if not self.should_failover(node):
                    continue
                log.info('Triggering failover for node %s (%s)', node.name, node.address)
                result = self.execute_failover(node)
                if result['migrated'] > 0:
                    failed_over += 1
            except Exception:
                db.session.rollback()
                log.exception('Failed to process failover for node %s', node.name)

        return {
            'monitored': len(candidates),
            'failed_over': failed_over,
            'timestamp': utcnow().isoformat(),
        }

    def recover_node(self, node_id) -> dict:
        """Brings a node back if its agent answers one health probe."""
        node = self.nodes.require(node_id)
        try:
            self.channel.http_health(node.endpoint(), timeout=self.recovery_timeout, component='Failover')
        except FleetError as e:
            raise NodeUnreachableError(f'Node is still not responding: {e}') from e

        self.nodes.update(node_id, status=STATUS_ONLINE, last_seen=utcnow(), consecutive_failures=0)
        log.info('Node %s recovered and back online', node.name)
        return {'success': True, 'message': 'Node recovered successfully'}

    def get_failover_status(self) -> dict:
        events = []
        stats = {
            'total_events': 0,
            'successful_failovers': 0,
            'failed_failovers': 0,
            'partial_failovers': 0,
        }
        for event, node in self.events.recent(20):
            entry = event.to_dict()
            entry['node_name'] = node.name if node else None
            entry['ip_address'] = node.address if node else None
            events.append(entry)
            stats['total_events'] += 1
            if event.status == 'completed':
                stats['successful_failovers'] += 1
            elif event.status in ('failed', 'error'):
                stats['failed_failovers'] += 1
            elif event.status == 'partial':
                stats['partial_failovers'] += 1

        failed_nodes = self.nodes.with_status(STATUS_FAILED)
        stats['failed_nodes_count'] = len(failed_nodes)
        return {
            'recent_events': events,
            'failed_nodes': [n.to_dict() for n in failed_nodes],
            'stats': stats,
        }
