"""
Node health monitoring.

Probes every node (HTTP agent with retries, SSH for SSH nodes, SSH fallback
for HTTP nodes that have SSH credentials) and writes the verdict to the
registry. Transport failures never leave this module: they become an
'offline' (or 'failing') status.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from fleetpanel.errors import FleetError, HostKeyUnverifiedError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.node import (
    Node, NodeEndpoint,
    STATUS_FAILED, STATUS_FAILING, STATUS_OFFLINE, STATUS_ONLINE,
    TRANSPORT_HTTP, TRANSPORT_SSH,
)
from fleetpanel.repositories import NodeRepository
from fleetpanel.services.channel import RemoteExecutionChannel
from fleetpanel.services.telemetry import normalize_stats

log = logging.getLogger(__name__)


@dataclass
class ProbeOutcome:
    online: bool
    transport: str | None = None        # 'http', 'ssh' or 'ssh-fallback'
    stats: dict | None = None           # raw agent-style stats
    response_time: float | None = None  # ms, HTTP only
    metadata: dict = field(default_factory=dict)
    error: str | None = None
    retries_attempted: int = 0
    host_key_fingerprint: str | None = None

    @property
    def fallback_used(self) -> bool:
        return self.transport == 'ssh-fallback'


class HealthMonitor:

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        nodes: NodeRepository | None = None,
        timeout: float = 5,
        max_retries: int = 3,
        concurrency: int = 5,
        soft_failure_limit: int = 0,
        sleep=time.sleep,
    ):
        self.channel = channel
        self.nodes = nodes or NodeRepository()
        self.timeout = timeout
        self.max_retries = max_retries
        self.concurrency = concurrency
        self.soft_failure_limit = soft_failure_limit
        self._sleep = sleep

    # ── Probing (network only, safe on worker threads) ────────────────────

    def probe(self, endpoint: NodeEndpoint) -> ProbeOutcome:
        try:
            if endpoint.transport == TRANSPORT_SSH:
                return self._probe_ssh(endpoint, TRANSPORT_SSH)

            outcome = self._probe_http(endpoint)
            if outcome.online or not endpoint.has_ssh_credentials:
                return outcome

            log.info('HTTP failed for %s, trying SSH fallback', endpoint.name)
            fallback = self._probe_ssh(endpoint, 'ssh-fallback')
            if fallback.online:
                return fallback
            outcome.error = f'{outcome.error}; SSH fallback: {fallback.error}'
            outcome.host_key_fingerprint = fallback.host_key_fingerprint
            return outcome
        except Exception as e:
            log.exception('Health probe of %s crashed', endpoint.name)
            return ProbeOutcome(online=False, error=str(e))

    def _probe_http(self, endpoint: NodeEndpoint) -> ProbeOutcome:
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                metadata, response_time = self.channel.http_health(endpoint, timeout=self.timeout)
            except FleetError as e:
                last_error = str(e)
                log.warning('HTTP check attempt %d/%d failed for %s: %s',
                            attempt, self.max_retries, endpoint.name, e)
                if attempt < self.max_retries:
                    self._sleep(attempt)
                continue

            stats = None
            try:
                stats = self.channel.http_stats(endpoint, timeout=self.timeout)
            except FleetError as e:
                log.warning('Could not get stats for node %s: %s', endpoint.name, e)

            return ProbeOutcome(
                online=True,
                transport=TRANSPORT_HTTP,
                stats=stats,
                response_time=response_time,
                metadata=metadata if isinstance(metadata, dict) else {},
                retries_attempted=attempt - 1,
            )

        return ProbeOutcome(
            online=False,
            error=last_error or 'All connection attempts failed',
            retries_attempted=self.max_retries,
        )

    def _probe_ssh(self, endpoint: NodeEndpoint, transport: str) -> ProbeOutcome:
        try:
            stats = self.channel.ssh_stats(endpoint)
        except HostKeyUnverifiedError as e:
            log.warning('SSH host key for %s not trusted (%s)', endpoint.name, e.fingerprint)
            return ProbeOutcome(online=False, error=str(e), host_key_fingerprint=e.fingerprint)
        except FleetError as e:
            log.warning('SSH health check failed for %s: %s', endpoint.name, e)
            return ProbeOutcome(online=False, error=str(e))
        return ProbeOutcome(online=True, transport=transport, stats=stats)

    # ── Registry writes ────────────────────────────────────────────────────

    def record(self, node: Node, outcome: ProbeOutcome) -> dict:
        """Persists a probe verdict. A 'failed' node keeps its status."""
        now = utcnow()
        keep_status = node.status == STATUS_FAILED
        result = {
            'node_id': node.id,
            'node_name': node.name,
            'last_seen': now.isoformat(),
        }

        if outcome.online:
            fields = {
                'last_seen': now,
                'consecutive_failures': 0,
                'last_transport': outcome.transport,
            }
            if not keep_status:
                fields['status'] = STATUS_ONLINE
            snapshot = None
            if outcome.stats is not None:
                snapshot = normalize_stats(outcome.stats, node.id)
                fields['resources'] = snapshot
            if outcome.transport == TRANSPORT_HTTP:
                fields['capabilities'] = {
                    'response_time': outcome.response_time,
                    'last_check': now.isoformat(),
                    'version': outcome.metadata.get('version', 'unknown'),
                }
            self.nodes.update(node.id, **fields)
            log.info('Node %s is ONLINE via %s', node.name, outcome.transport)
            result.update({
                'status': STATUS_ONLINE,
                'transport': outcome.transport,
                'response_time': outcome.response_time,
                'stats': snapshot,
                'fallback_used': outcome.fallback_used,
            })
        else:
            failures = (node.consecutive_failures or 0) + 1
            status = STATUS_OFFLINE
            if (self.soft_failure_limit > 0
                    and node.status in (STATUS_ONLINE, STATUS_FAILING)
                    and failures < self.soft_failure_limit):
                status = STATUS_FAILING
            fields = {'last_seen': now, 'consecutive_failures': failures}
            if not keep_status:
                fields['status'] = status
            self.nodes.update(node.id, **fields)
            log.info('Node %s is %s', node.name, status.upper())
            result.update({
                'status': status,
                'error': outcome.error,
                'retries_attempted': outcome.retries_attempted,
            })
            if outcome.host_key_fingerprint:
                result['host_key_fingerprint'] = outcome.host_key_fingerprint

        if keep_status:
            result['node_status'] = STATUS_FAILED
        return result

    def check_health(self, node: Node) -> dict:
        return self.record(node, self.probe(node.endpoint()))

    def check_all(self) -> dict:
        """Probes every node that is not awaiting manual recovery.

        Up to `concurrency` probes run at once; batches run one after the
        other. Not atomic: each node's verdict is committed on its own.
        """
        nodes = [n for n in self.nodes.all() if n.status != STATUS_FAILED]
        if not nodes:
            return {'checked': 0, 'online': 0, 'offline': 0, 'results': []}

        log.info('Checking health of %d nodes...', len(nodes))
        results = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for i in range(0, len(nodes), self.concurrency):
                batch = nodes[i:i + self.concurrency]
                outcomes = list(pool.map(self.probe, [n.endpoint() for n in batch]))
                for node, outcome in zip(batch, outcomes):
                    try:
                        results.append(self.record(node, outcome))
                    except SQLAlchemyError as e:
                        db.session.rollback()
                        log.error('Could not record health of node %s: %s', node.name, e)
                        results.append({'node_id': node.id, 'node_name': node.name,
                                        'status': 'error', 'error': str(e)})

        online = sum(1 for r in results if r['status'] == STATUS_ONLINE)
        offline = len(results) - online
        log.info('Health check complete: %d online, %d offline', online, offline)
        return {
            'checked': len(nodes),
            'online': online,
            'offline': offline,
            'results': results,
        }

    def get_health_summary(self) -> dict:
        counts = self.nodes.status_counts()
        nodes = self.nodes.by_last_seen()
        return {
            'summary': {
                'total': len(nodes),
                'online': counts.get(STATUS_ONLINE, 0),
                'offline': counts.get(STATUS_OFFLINE, 0),
                'failing': counts.get(STATUS_FAILING, 0),
                'failed': counts.get(STATUS_FAILED, 0),
                'unknown': counts.get('unknown', 0),
            },
            'nodes': [n.to_dict() for n in nodes],
        }

    def force_health_check(self, node_id) -> dict:
        return self.check_health(self.nodes.require(node_id))
