"""
Load-aware placement of servers onto online nodes.

Scoring and the placement strategies are pure functions over NodeMetrics;
LoadBalancer adds the registry reads (analysis) and writes (applying an
assignment sets the server's node_id, nothing is started or stopped).
"""
import logging
import math
import random
from dataclasses import dataclass, field

from fleetpanel.errors import NoAvailableNodesError, UnknownStrategyError
from fleetpanel.models import utcnow
from fleetpanel.repositories import NodeRepository, ServerRepository
from fleetpanel.services.telemetry import usage_percent

log = logging.getLogger(__name__)

ROUND_ROBIN = 'round_robin'
LEAST_CONNECTIONS = 'least_connections'
RESOURCE_BASED = 'resource_based'
WEIGHTED = 'weighted'
STRATEGIES = (ROUND_ROBIN, LEAST_CONNECTIONS, RESOURCE_BASED, WEIGHTED)

PRIORITY_ORDER = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}


@dataclass
class NodeMetrics:
    id: int
    name: str
    server_count: int = 0
    running_servers: int = 0
    resources: dict = field(default_factory=dict)
    capabilities: dict = field(default_factory=dict)
    load_percentage: float = 0.0
    resource_score: float = 100.0
    connection_score: int = 0
    weight: float = 1.0

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'server_count': self.server_count,
            'running_servers': self.running_servers,
            'load_percentage': self.load_percentage,
            'resource_score': self.resource_score,
            'connection_score': self.connection_score,
            'weight': self.weight,
        }


# ── Scoring ───────────────────────────────────────────────────────────────

def calculate_load_percentage(resources: dict | None, server_count=None, running_servers=None) -> float:
    """Weighted blend of CPU (0.4), memory (0.3), running/total servers (0.2)
    and a fixed 0.1 network baseline, renormalized over the factors present."""
    load = 0.0
    factors = 0.0

    cpu = usage_percent(resources, 'cpu')
    if cpu is not None:
        load += cpu / 100 * 0.4
        factors += 0.4

    memory = usage_percent(resources, 'memory')
    if memory is not None:
        load += memory / 100 * 0.3
        factors += 0.3

    if server_count is not None and running_servers is not None:
        load += running_servers / max(server_count, 1) * 0.2
        factors += 0.2

    # No network telemetry yet: assume a 10% baseline
    load += 0.1
    factors += 0.1

    return load / factors * 100 if factors > 0 else 0.0


def calculate_resource_score(resources: dict | None) -> float:
    """0-100, higher means more headroom."""
    score = 100.0

    cpu = usage_percent(resources, 'cpu')
    if cpu is not None:
        if cpu > 80:
            score -= (cpu - 80) * 2
        elif cpu > 60:
            score -= cpu - 60

    memory = usage_percent(resources, 'memory')
    if memory is not None:
        if memory > 80:
            score -= (memory - 80) * 2
        elif memory > 60:
            score -= memory - 60

    disk = usage_percent(resources, 'disk')
    if disk is not None:
        if disk > 90:
            score -= (disk - 90) * 3
        elif disk > 75:
            score -= disk - 75

    return max(0.0, min(100.0, score))


def calculate_node_weight(resources: dict | None, capabilities: dict | None) -> float:
    weight = 1.0
    capabilities = capabilities or {}

    if usage_percent(resources, 'cpu') is not None and usage_percent(resources, 'memory') is not None:
        weight *= calculate_resource_score(resources) / 50

    response_time = capabilities.get('response_time')
    if response_time:
        if response_time < 50:
            weight *= 1.2
        elif response_time > 200:
            weight *= 0.8

    # Any reported version earns the bonus; versions are not compared.
    if capabilities.get('version'):
        weight *= 1.1

    return max(0.1, weight)


def load_deviation(nodes: list[NodeMetrics]) -> float:
    """Population standard deviation of load_percentage."""
    if len(nodes) < 2:
        return 0.0
    loads = [n.load_percentage for n in nodes]
    mean = sum(loads) / len(loads)
    return math.sqrt(sum((load - mean) ** 2 for load in loads) / len(loads))


# ── Strategies ────────────────────────────────────────────────────────────

def _server_ref(server) -> tuple:
    if isinstance(server, dict):
        return server['id'], server.get('name')
    return server.id, server.name


def _assignment(server, node: NodeMetrics, strategy: str) -> dict:
    server_id, server_name = _server_ref(server)
    return {
        'server_id': server_id,
        'server_name': server_name,
        'node_id': node.id,
        'node_name': node.name,
        'strategy': strategy,
    }


def round_robin(nodes: list[NodeMetrics], servers: list) -> list[dict]:
    return [_assignment(server, nodes[i % len(nodes)], ROUND_ROBIN)
            for i, server in enumerate(servers)]


def least_connections(nodes: list[NodeMetrics], servers: list) -> list[dict]:
    """Greedy: every server goes to the node with the fewest running servers
    so far, counting the assignments already made in this batch. Ties go to
    the earlier node."""
    counts = [n.connection_score for n in nodes]
    assignments = []
    for server in servers:
        index = min(range(len(nodes)), key=lambda i: counts[i])
        assignments.append(_assignment(server, nodes[index], LEAST_CONNECTIONS))
        counts[index] += 1
    return assignments


def resource_based(nodes: list[NodeMetrics], servers: list) -> list[dict]:
    """Highest resource score wins; the winner's score decays 5% per assignment."""
    scores = [n.resource_score for n in nodes]
    assignments = []
    for server in servers:
        index = max(range(len(nodes)), key=lambda i: scores[i])
        assignments.append(_assignment(server, nodes[index], RESOURCE_BASED))
        scores[index] *= 0.95
    return assignments


def weighted(nodes: list[NodeMetrics], servers: list, rng: random.Random | None = None) -> list[dict]:
    """Random choice proportional to weight; the chosen weight decays 2%."""
    rng = rng or random.Random()
    weights = [n.weight for n in nodes]
    assignments = []
    for server in servers:
        remaining = rng.random() * sum(weights)
        index = len(weights) - 1
        for i, w in enumerate(weights):
            remaining -= w
            if remaining <= 0:
                index = i
                break
        assignments.append(_assignment(server, nodes[index], WEIGHTED))
        weights[index] *= 0.98
    return assignments


def plan(strategy: str, nodes: list[NodeMetrics], servers: list, rng: random.Random | None = None) -> list[dict]:
    if strategy not in STRATEGIES:
        raise UnknownStrategyError(f'Unknown load balancing strategy: {strategy}')
    if not servers:
        return []
    if not nodes:
        raise NoAvailableNodesError('No online nodes available for load balancing')
    if strategy == ROUND_ROBIN:
        return round_robin(nodes, servers)
    if strategy == LEAST_CONNECTIONS:
        return least_connections(nodes, servers)
    if strategy == RESOURCE_BASED:
        return resource_based(nodes, servers)
    return weighted(nodes, servers, rng)


def serialize_analysis(analysis: dict) -> dict:
    return {
        'nodes': [n.to_dict() for n in analysis['nodes']],
        'unassigned_servers': [s.to_dict() for s in analysis['unassigned_servers']],
        'total_servers': analysis['total_servers'],
        'average_load': analysis['average_load'],
    }


class LoadBalancer:

    def __init__(
        self,
        nodes: NodeRepository | None = None,
        servers: ServerRepository | None = None,
        rng: random.Random | None = None,
    ):
        self.nodes = nodes or NodeRepository()
        self.servers = servers or ServerRepository()
        self.rng = rng or random.Random()

    def analyze(self) -> dict:
        """Fresh metrics for every online node, in registry order."""
        counts = self.servers.counts_by_node()
        metrics = []
        for node in self.nodes.online():
            server_count, running = counts.get(node.id, (0, 0))
            resources = node.resources or {}
            capabilities = node.capabilities or {}
            metrics.append(NodeMetrics(
                id=node.id,
                name=node.name,
                server_count=server_count,
                running_servers=running,
                resources=resources,
                capabilities=capabilities,
                load_percentage=calculate_load_percentage(resources, server_count, running),
                resource_score=calculate_resource_score(resources),
                connection_score=running,
                weight=calculate_node_weight(resources, capabilities),
            ))

        unassigned = self.servers.unassigned()
        return {
            'nodes': metrics,
            'unassigned_servers': unassigned,
            'total_servers': len(unassigned) + sum(m.server_count for m in metrics),
            'average_load': (sum(m.load_percentage for m in metrics) / len(metrics)) if metrics else 0,
        }

    def execute(self, strategy: str = RESOURCE_BASED, servers: list | None = None) -> dict:
        """Places `servers` (default: unassigned ones) and writes the new node_ids."""
        if strategy not in STRATEGIES:
            raise UnknownStrategyError(f'Unknown load balancing strategy: {strategy}')
        analysis = self.analyze()
        if not analysis['nodes']:
            raise NoAvailableNodesError('No online nodes available for load balancing')

        to_place = analysis['unassigned_servers'] if servers is None else servers
        assignments = plan(strategy, analysis['nodes'], to_place, self.rng)

        applied = 0
        for assignment in assignments:
            applied += self.servers.assign(assignment['server_id'], assignment['node_id'])

        log.info('Applied %d/%d %s assignments', applied, len(assignments), strategy)
        return {
            'strategy': strategy,
            'assignments': assignments,
            'applied': applied,
            'total_servers': len(assignments),
            'nodes_used': len({a['node_id'] for a in assignments}),
        }

    def get_recommendations(self) -> dict:
        analysis = self.analyze()
        nodes = analysis['nodes']
        recommendations = []

        deviation = load_deviation(nodes)
        if deviation > 20:
            recommendations.append({
                'type': 'rebalance',
                'priority': 'high',
                'message': f'High load variance detected ({deviation:.1f}%). Consider rebalancing servers.',
                'action': RESOURCE_BASED,
            })

        overloaded = [n for n in nodes if n.load_percentage > 80]
        if overloaded:
            recommendations.append({
                'type': 'overload',
                'priority': 'critical',
                'message': f'{len(overloaded)} node(s) are overloaded (>80% load). Immediate rebalancing recommended.',
                'nodes': [n.name for n in overloaded],
                'action': WEIGHTED,
            })

        underutilized = [n for n in nodes if n.load_percentage < 20]
        unassigned = analysis['unassigned_servers']
        if underutilized and unassigned:
            recommendations.append({
                'type': 'underutilized',
                'priority': 'medium',
                'message': (f'{len(underutilized)} node(s) are underutilized (<20% load) '
                            f'with {len(unassigned)} unassigned servers.'),
                'action': LEAST_CONNECTIONS,
            })

        return {
            'analysis': analysis,
            'recommendations': recommendations,
            'timestamp': utcnow().isoformat(),
        }

    def auto_balance(self) -> dict:
        recommendations = self.get_recommendations()['recommendations']
        if not recommendations:
            return {'action': 'none', 'message': 'No balancing needed'}

        top = min(recommendations, key=lambda r: PRIORITY_ORDER.get(r['priority'], len(PRIORITY_ORDER)))
        result = self.execute(top['action'])
        return {
            'action': 'auto_balanced',
            'strategy': top['action'],
            'reason': top['message'],
            'result': result,
        }
