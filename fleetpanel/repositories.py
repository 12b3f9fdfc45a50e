"""
Registry access.

One repository per entity. Every control loop reads and writes the registry
through these, one short transaction per write. Writes are plain column
updates keyed by id with no read-modify-write guard: when two loops touch the
same node row, the last commit wins.
"""
from datetime import datetime

from sqlalchemy import case, func

from fleetpanel.errors import NodeInUseError, NodeNotFoundError
from fleetpanel.extensions import db
from fleetpanel.models import utcnow
from fleetpanel.models.failover_event import FailoverEvent
from fleetpanel.models.node import Node, STATUS_OFFLINE, STATUS_ONLINE, STATUS_UNKNOWN
from fleetpanel.models.resource_sample import ResourceSample
from fleetpanel.models.server import Server


class NodeRepository:

    def get(self, node_id) -> Node | None:
        return db.session.get(Node, node_id)

    def require(self, node_id) -> Node:
        node = self.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def all(self) -> list[Node]:
        return Node.query.order_by(Node.created_at, Node.id).all()

    def with_status(self, *statuses: str) -> list[Node]:
        return (Node.query
                .filter(Node.status.in_(statuses))
                .order_by(Node.created_at, Node.id)
                .all())

    def online(self, exclude_id=None) -> list[Node]:
        query = Node.query.filter(Node.status == STATUS_ONLINE)
        if exclude_id is not None:
            query = query.filter(Node.id != exclude_id)
        return query.order_by(Node.created_at, Node.id).all()

    def by_address(self, address: str) -> Node | None:
        return Node.query.filter_by(address=address).first()

    def by_last_seen(self) -> list[Node]:
        return Node.query.order_by(Node.last_seen.desc(), Node.id).all()

    def add(self, name: str, address: str, port: int = 3001, **fields) -> Node:
        fields.setdefault('status', STATUS_UNKNOWN)
        node = Node(name=name, address=address, port=port, **fields)
        db.session.add(node)
        db.session.commit()
        return node

    def update(self, node_id, **fields) -> int:
        """Blind column update. Returns the number of rows touched."""
        fields['updated_at'] = utcnow()
        count = Node.query.filter_by(id=node_id).update(fields, synchronize_session='fetch')
        db.session.commit()
        return count

    def mark_stale_offline(self, seen_before: datetime) -> int:
        count = (Node.query
                 .filter(Node.status == STATUS_ONLINE, Node.last_seen < seen_before)
                 .update({'status': STATUS_OFFLINE, 'updated_at': utcnow()},
                         synchronize_session='fetch'))
        db.session.commit()
        return count

    def delete(self, node_id) -> None:
        node = self.require(node_id)
        owned = Server.query.filter_by(node_id=node_id).count()
        if owned:
            raise NodeInUseError(node_id, owned)
        db.session.delete(node)
        db.session.commit()

    def status_counts(self) -> dict[str, int]:
        rows = db.session.query(Node.status, func.count(Node.id)).group_by(Node.status).all()
        return {status: count for status, count in rows}


class ServerRepository:

    def get(self, server_id) -> Server | None:
        return db.session.get(Server, server_id)

    def add(self, name: str, status: str = 'stopped', node_id=None) -> Server:
        server = Server(name=name, status=status, node_id=node_id)
        db.session.add(server)
        db.session.commit()
        return server

    def owned_by(self, node_id) -> list[Server]:
        return Server.query.filter_by(node_id=node_id).order_by(Server.id).all()

    def unassigned(self) -> list[Server]:
        return Server.query.filter(Server.node_id.is_(None)).order_by(Server.id).all()

    def for_sync(self, master_node_id) -> list[Server]:
        return (Server.query
                .filter((Server.node_id == master_node_id) | Server.node_id.is_(None))
                .order_by(Server.id)
                .all())

    def assign(self, server_id, node_id) -> int:
        count = (Server.query.filter_by(id=server_id)
                 .update({'node_id': node_id, 'updated_at': utcnow()},
                         synchronize_session='fetch'))
        db.session.commit()
        return count

    def mark_stopped(self, server_id) -> None:
        (Server.query.filter_by(id=server_id)
         .update({'status': 'stopped', 'pid': None, 'updated_at': utcnow()},
                 synchronize_session='fetch'))
        db.session.commit()

    def counts_by_node(self) -> dict:
        """Returns {node_id: (server_count, running_count)} for assigned servers."""
        running = func.sum(case((Server.status == 'running', 1), else_=0))
        rows = (db.session.query(Server.node_id, func.count(Server.id), running)
                .filter(Server.node_id.isnot(None))
                .group_by(Server.node_id)
                .all())
        return {node_id: (total, int(run or 0)) for node_id, total, run in rows}


class FailoverEventRepository:

    def record(self, node_id, status: str, details=None, server_count=None) -> FailoverEvent:
        event = FailoverEvent(
            node_id=node_id,
            status=status,
            details=details,
            server_count=server_count,
        )
        db.session.add(event)
        db.session.commit()
        return event

    def count_since(self, node_id, since: datetime) -> int:
        return (FailoverEvent.query
                .filter(FailoverEvent.node_id == node_id, FailoverEvent.created_at >= since)
                .count())

    def recent(self, limit: int = 20) -> list[tuple[FailoverEvent, Node | None]]:
        # Outer join: events outlive the node rows they refer to.
        return (db.session.query(FailoverEvent, Node)
                .outerjoin(Node, Node.id == FailoverEvent.node_id)
                .order_by(FailoverEvent.created_at.desc(), FailoverEvent.id.desc())
                .limit(limit)
                .all())


class ResourceSampleRepository:

    def add(self, node_id, snapshot: dict, timestamp: datetime | None = None) -> ResourceSample:
        cpu = snapshot.get('cpu') or {}
        memory = snapshot.get('memory') or {}
        sample = ResourceSample(
            node_id=node_id,
            timestamp=timestamp or utcnow(),
            cpu_usage=cpu.get('usage'),
            cpu_cores=cpu.get('cores'),
            memory_total=memory.get('total'),
            memory_used=memory.get('used'),
            memory_free=memory.get('free'),
            disk_usage=snapshot.get('disk') or [],
            network_interfaces=snapshot.get('network') or [],
            system_info=snapshot.get('system') or {},
            raw_data=snapshot,
        )
        db.session.add(sample)
        db.session.commit()
        return sample

    def history(self, node_id, since: datetime, limit: int | None = None) -> list[ResourceSample]:
        """Samples at or after `since`, oldest first, keeping the newest `limit`."""
        query = (ResourceSample.query
                 .filter(ResourceSample.node_id == node_id, ResourceSample.timestamp >= since)
                 .order_by(ResourceSample.timestamp.desc(), ResourceSample.id.desc()))
        if limit:
            query = query.limit(limit)
        return list(reversed(query.all()))

    def latest(self, node_id) -> ResourceSample | None:
        return (ResourceSample.query
                .filter_by(node_id=node_id)
                .order_by(ResourceSample.timestamp.desc(), ResourceSample.id.desc())
                .first())

    def delete_older_than(self, cutoff: datetime) -> int:
        count = (ResourceSample.query
                 .filter(ResourceSample.timestamp < cutoff)
                 .delete(synchronize_session=False))
        db.session.commit()
        return count
