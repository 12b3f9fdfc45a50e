"""
Resource telemetry collection, alerting and trend analysis.

Only HTTP-transport nodes are polled here; SSH nodes get their snapshot from
the health monitor's SSH probe.
"""
import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from fleetpanel.errors import FleetError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.node import Node, STATUS_OFFLINE, STATUS_ONLINE, TRANSPORT_SSH
from fleetpanel.models.resource_sample import ResourceSample
from fleetpanel.repositories import NodeRepository, ResourceSampleRepository
from fleetpanel.services.channel import RemoteExecutionChannel
from fleetpanel.services.telemetry import normalize_stats, usage_percent

log = logging.getLogger(__name__)

REPORT_RANGES = {'24h': 24, '7d': 168}

# (critical above, warning above)
CPU_THRESHOLDS = (90, 75)
MEMORY_THRESHOLDS = (90, 80)
DISK_THRESHOLDS = (95, 85)


def _level(value: float, thresholds: tuple) -> str | None:
    critical, warning = thresholds
    if value > critical:
        return 'critical'
    if value > warning:
        return 'warning'
    return None


def generate_alerts(resources: dict | None) -> list[dict]:
    """Threshold alerts for one snapshot. At most one alert per metric (per mount for disk)."""
    alerts = []
    if not resources:
        return alerts

    cpu = usage_percent(resources, 'cpu')
    if cpu is not None:
        level = _level(cpu, CPU_THRESHOLDS)
        if level:
            wording = 'critically high' if level == 'critical' else 'high'
            alerts.append({
                'type': level,
                'metric': 'cpu',
                'message': f'CPU usage is {wording}: {cpu:.1f}%',
                'value': cpu,
            })

    memory = usage_percent(resources, 'memory')
    if memory is not None:
        level = _level(memory, MEMORY_THRESHOLDS)
        if level:
            wording = 'critically high' if level == 'critical' else 'high'
            alerts.append({
                'type': level,
                'metric': 'memory',
                'message': f'Memory usage is {wording}: {memory:.1f}%',
                'value': memory,
            })

    disks = resources.get('disk')
    if isinstance(disks, list):
        for disk in disks:
            value = usage_percent({'disk': [disk]}, 'disk') or 0.0
            level = _level(value, DISK_THRESHOLDS)
            if level:
                wording = 'critically full' if level == 'critical' else 'almost full'
                alerts.append({
                    'type': level,
                    'metric': 'disk',
                    'message': f"Disk {disk.get('mount')} is {wording}: {value:.1f}%",
                    'value': value,
                    'mount': disk.get('mount'),
                })
    elif disks is not None:
        value = usage_percent(resources, 'disk')
        level = _level(value, DISK_THRESHOLDS) if value is not None else None
        if level:
            alerts.append({
                'type': level,
                'metric': 'disk',
                'message': f'Disk usage is {value:.1f}%',
                'value': value,
            })
    return alerts


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _direction(recent: float, older: float) -> str:
    if recent > older:
        return 'increasing'
    if recent < older:
        return 'decreasing'
    return 'stable'


def calculate_trends(history: list[dict]) -> dict:
    """Compares the newest 10 samples with the 10 before them, for CPU and memory."""
    if len(history) < 2:
        return {'trend': 'insufficient_data'}

    recent = history[-10:]
    older = history[-20:-10]

    trends = {}
    for metric in ('cpu', 'memory'):
        recent_avg = _mean([usage_percent(h, metric) or 0.0 for h in recent])
        if older:
            older_avg = _mean([usage_percent(h, metric) or 0.0 for h in older])
        else:
            older_avg = recent_avg
        trends[metric] = {
            'current_average': recent_avg,
            'previous_average': older_avg,
            'trend': _direction(recent_avg, older_avg),
            'change_percent': (recent_avg - older_avg) / older_avg * 100 if older_avg != 0 else 0,
        }
    return trends


def summarize(node_statuses: list[dict]) -> dict:
    summary = {
        'total_nodes': len(node_statuses),
        'online_nodes': sum(1 for s in node_statuses if s['node']['status'] == STATUS_ONLINE),
        'offline_nodes': sum(1 for s in node_statuses if s['node']['status'] == STATUS_OFFLINE),
        'alerts': {'critical': 0, 'warning': 0, 'total': 0},
        'averages': {'cpu_usage': 0, 'memory_usage': 0},
    }
    total_cpu = total_memory = 0.0
    with_data = 0
    for status in node_statuses:
        for alert in status['alerts']:
            if alert['type'] in ('critical', 'warning'):
                summary['alerts'][alert['type']] += 1
            summary['alerts']['total'] += 1
        if status['resources']:
            total_cpu += usage_percent(status['resources'], 'cpu') or 0.0
            total_memory += usage_percent(status['resources'], 'memory') or 0.0
            with_data += 1
    if with_data:
        summary['averages']['cpu_usage'] = total_cpu / with_data
        summary['averages']['memory_usage'] = total_memory / with_data
    return summary


def _history_entry(sample: ResourceSample) -> dict:
    raw = sample.raw_data or {}
    return {
        'timestamp': sample.timestamp.isoformat(),
        'cpu': {
            'usage': sample.cpu_usage or 0,
            'cores': (raw.get('cpu') or {}).get('cores', sample.cpu_cores or 1),
        },
        'memory': {
            'total': sample.memory_total or 0,
            'used': sample.memory_used or 0,
            'free': sample.memory_free or 0,
            'usage_percent': sample.memory_usage_percent,
        },
        'disk': sample.disk_usage or [],
        'raw': raw,
    }


def _node_view(node: Node) -> dict:
    return {
        'id': node.id,
        'name': node.name,
        'address': node.address,
        'status': node.status,
    }


class ResourceMonitor:

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        nodes: NodeRepository | None = None,
        samples: ResourceSampleRepository | None = None,
        retention_days: int = 7,
        max_data_points: int = 1000,
        timeout: float = 10,
    ):
        self.channel = channel
        self.nodes = nodes or NodeRepository()
        self.samples = samples or ResourceSampleRepository()
        self.retention_days = retention_days
        self.max_data_points = max_data_points
        self.timeout = timeout

    def collect_node_resources(self, node: Node) -> dict:
        raw = self.channel.http_stats(node.endpoint(), timeout=self.timeout, component='ResourceMonitor')
        return normalize_stats(raw, node.id)

    def store_resource_data(self, node_id, snapshot: dict) -> None:
        self.samples.add(node_id, snapshot)
        self.nodes.update(node_id, resources=snapshot)

    def collect_all(self) -> dict:
        online = self.nodes.online()
        polled = [n for n in online if n.transport != TRANSPORT_SSH]
        skipped = [n.id for n in online if n.transport == TRANSPORT_SSH]
        if not polled:
            return {'collected': 0, 'total': 0, 'skipped': skipped, 'results': [],
                    'message': 'No online nodes to monitor'}

        log.info('Collecting resources from %d nodes', len(polled))
        results = []
        for node in polled:
            try:
                snapshot = self.collect_node_resources(node)
                self.store_resource_data(node.id, snapshot)
                results.append({
                    'node_id': node.id,
                    'node_name': node.name,
                    'success': True,
                    'metrics_collected': len(snapshot),
                })
            except (FleetError, SQLAlchemyError) as e:
                db.session.rollback()
                log.error('Failed to collect from node %s: %s', node.name, e)
                results.append({
                    'node_id': node.id,
                    'node_name': node.name,
                    'success': False,
                    'error': str(e),
                })

        return {
            'collected': sum(1 for r in results if r['success']),
            'total': len(polled),
            'skipped': skipped,
            'results': results,
        }

    def cleanup_old_data(self) -> int:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        deleted = self.samples.delete_older_than(cutoff)
        if deleted:
            log.info('Cleaned up %d old resource data points', deleted)
        return deleted

    def get_history(self, node_id, hours: float = 24) -> dict:
        since = utcnow() - timedelta(hours=hours)
        history = [_history_entry(s) for s in self.samples.history(node_id, since, self.max_data_points)]
        return {
            'node_id': node_id,
            'hours': hours,
            'data_points': len(history),
            'history': history,
        }

    def get_current_status(self) -> dict:
        statuses = []
        for node in self.nodes.all():
            latest = self.samples.latest(node.id)
            if latest is not None:
                resources = latest.raw_data
                last_update = latest.timestamp.isoformat()
            else:
                # SSH nodes only have the snapshot the health probe wrote
                resources = node.resources
                last_update = (node.resources or {}).get('timestamp')
            statuses.append({
                'node': _node_view(node),
                'resources': resources,
                'last_update': last_update,
                'alerts': generate_alerts(resources),
            })
        return {
            'timestamp': utcnow().isoformat(),
            'nodes': statuses,
            'summary': summarize(statuses),
        }

    def get_report(self, time_range: str = '24h') -> dict:
        hours = REPORT_RANGES.get(time_range, 1)
        current = self.get_current_status()
        reports = []
        for status in current['nodes']:
            if status['node']['status'] != STATUS_ONLINE:
                continue
            try:
                history = self.get_history(status['node']['id'], hours)['history']
            except SQLAlchemyError as e:
                db.session.rollback()
                log.warning('Could not get history for node %s: %s', status['node']['id'], e)
                reports.append({
                    'node': status['node'],
                    'current': status['resources'],
                    'history': [],
                    'alerts': status['alerts'],
                    'error': 'Could not retrieve historical data',
                })
                continue
            reports.append({
                'node': status['node'],
                'current': status['resources'],
                'history': history,
                'alerts': status['alerts'],
                'utilization_trends': calculate_trends(history),
            })
        return {
            'generated_at': utcnow().isoformat(),
            'time_range': time_range,
            'summary': current['summary'],
            'node_reports': reports,
        }
