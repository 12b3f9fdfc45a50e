"""
LAN node discovery.

Scans the neighbourhood of every local IPv4 address for agents answering
GET /health with {"status": "ok"} and adds them to the registry.
"""
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import psutil
from sqlalchemy.exc import SQLAlchemyError

from fleetpanel.errors import FleetError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.node import NodeEndpoint, STATUS_FAILED, STATUS_ONLINE
from fleetpanel.repositories import NodeRepository
from fleetpanel.services.channel import RemoteExecutionChannel

log = logging.getLogger(__name__)

OFFLINE_AFTER = timedelta(minutes=5)


def get_local_networks() -> list[dict]:
    """Non-loopback IPv4 addresses of this host."""
    networks = []
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if addr.family != socket.AF_INET or addr.address.startswith('127.'):
                continue
            networks.append({'interface': name, 'ip': addr.address, 'netmask': addr.netmask})
    return networks


def generate_scan_ips(base_ip: str, scan_range: int = 10) -> list[str]:
    """Addresses within ±scan_range of base_ip on the third and fourth octets.

    Octets are clamped (third to 0-255, fourth to 1-254); base_ip itself is
    never returned and the result has no duplicates.
    """
    parts = [int(p) for p in base_ip.split('.')]
    seen = set()
    ips = []
    for i in range(-scan_range, scan_range + 1):
        third = max(0, min(255, parts[2] + i))
        for j in range(-scan_range, scan_range + 1):
            fourth = max(1, min(254, parts[3] + j))
            if third == parts[2] and fourth == parts[3]:
                continue
            ip = f'{parts[0]}.{parts[1]}.{third}.{fourth}'
            if ip not in seen:
                seen.add(ip)
                ips.append(ip)
    return ips


class Discovery:

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        nodes: NodeRepository | None = None,
        port: int = 3001,
        timeout: float = 2,
        scan_range: int = 10,
        batch_size: int = 10,
        batch_pause: float = 0.1,
        networks=get_local_networks,
        sleep=time.sleep,
    ):
        self.channel = channel
        self.nodes = nodes or NodeRepository()
        self.port = port
        self.timeout = timeout
        self.scan_range = scan_range
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self._networks = networks
        self._sleep = sleep

    def test_node(self, ip: str, port: int | None = None) -> dict | None:
        port = port or self.port
        endpoint = NodeEndpoint(id=None, name=ip, address=ip, port=port)
        try:
            payload, _ = self.channel.http_health(endpoint, timeout=self.timeout, component='Discovery')
        except FleetError:
            return None
        if isinstance(payload, dict) and payload.get('status') == 'ok':
            return {
                'ip': ip,
                'port': port,
                'status': STATUS_ONLINE,
                'discovered_at': utcnow(),
                'metadata': payload,
            }
        return None

    def discover_nodes(self) -> list[dict]:
        networks = self._networks()
        log.info('Starting node discovery on networks: %s', [n['ip'] for n in networks])

        discovered = []
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for network in networks:
                scan_ips = generate_scan_ips(network['ip'], self.scan_range)
                log.info('Scanning %d IPs around %s', len(scan_ips), network['ip'])
                for i in range(0, len(scan_ips), self.batch_size):
                    batch = scan_ips[i:i + self.batch_size]
                    found = [r for r in pool.map(self.test_node, batch) if r is not None]
                    if found:
                        log.info('Found %d nodes in batch: %s', len(found), [n['ip'] for n in found])
                    discovered.extend(found)
                    self._sleep(self.batch_pause)

        log.info('Discovery complete. Found %d nodes.', len(discovered))
        return discovered

    def register_discovered_nodes(self, discovered: list[dict]) -> int:
        """Adds unseen addresses to the registry. Returns how many were new."""
        registered = 0
        for found in discovered:
            try:
                existing = self.nodes.by_address(found['ip'])
                if existing is None:
                    name = f"Discovered Node ({found['ip']})"
                    self.nodes.add(name, found['ip'], found['port'],
                                   status=STATUS_ONLINE, last_seen=found['discovered_at'])
                    log.info('Registered new node: %s at %s:%s', name, found['ip'], found['port'])
                    registered += 1
                else:
                    fields = {'last_seen': found['discovered_at'], 'port': found['port']}
                    # failed stays failed until recover_node
                    if existing.status != STATUS_FAILED:
                        fields['status'] = STATUS_ONLINE
                    self.nodes.update(existing.id, **fields)
            except SQLAlchemyError as e:
                db.session.rollback()
                log.error('Failed to register node %s: %s', found['ip'], e)
        return registered

    def update_node_statuses(self) -> int:
        count = self.nodes.mark_stale_offline(utcnow() - OFFLINE_AFTER)
        log.info('Marked %d nodes as offline', count)
        return count

    def perform_discovery_cycle(self) -> dict:
        log.info('Starting discovery cycle...')
        discovered = self.discover_nodes()
        registered = self.register_discovered_nodes(discovered)
        self.update_node_statuses()
        log.info('Discovery cycle complete. Registered %d new nodes.', registered)
        return {'discovered': len(discovered), 'registered': registered}
