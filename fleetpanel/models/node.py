from dataclasses import dataclass

from fleetpanel.extensions import db
from fleetpanel.models import utcnow

# Node status vocabulary
STATUS_UNKNOWN = 'unknown'
STATUS_ONLINE = 'online'
STATUS_OFFLINE = 'offline'
STATUS_FAILING = 'failing'
STATUS_FAILED = 'failed'

TRANSPORT_HTTP = 'http'
TRANSPORT_SSH = 'ssh'


@dataclass(frozen=True)
class NodeEndpoint:
    """Detached, thread-safe view of the connection details of a node.

    Probes run on worker threads, so they get this snapshot instead of the
    ORM row (which is bound to the session of the thread that loaded it).
    """
    id: int
    name: str
    address: str
    port: int
    transport: str = TRANSPORT_HTTP
    auth_token: str | None = None
    ssh_user: str | None = None
    ssh_password: str | None = None
    ssh_key: str | None = None
    ssh_port: int = 22
    host_key: str | None = None

    @property
    def has_ssh_credentials(self) -> bool:
        return bool(self.ssh_user and (self.ssh_password or self.ssh_key))


class Node(db.Model):
    __tablename__ = 'nodes'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    address = db.Column(db.String(255), nullable=False, index=True)
    port = db.Column(db.Integer, nullable=False, default=3001)

    # unknown, online, offline, failing, failed
    status = db.Column(db.String(16), nullable=False, default=STATUS_UNKNOWN)
    last_seen = db.Column(db.DateTime, nullable=True)
    consecutive_failures = db.Column(db.Integer, nullable=False, default=0)

    # Transport: configured ('http' | 'ssh') and observed on the last good probe
    transport = db.Column(db.String(8), nullable=False, default=TRANSPORT_HTTP)
    last_transport = db.Column(db.String(16), nullable=True)
    auth_token = db.Column(db.String(255), nullable=True)
    ssh_user = db.Column(db.String(64), nullable=True)
    ssh_password = db.Column(db.String(255), nullable=True)
    ssh_key = db.Column(db.Text, nullable=True)
    ssh_port = db.Column(db.Integer, nullable=False, default=22)
    host_key = db.Column(db.String(128), nullable=True)  # SHA256:<base64>

    # Denormalized telemetry snapshot and load-balancing hints
    resources = db.Column(db.JSON, nullable=True)
    capabilities = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<Node {self.name} {self.address}:{self.port} ({self.status})>'

    @property
    def has_ssh_credentials(self) -> bool:
        return bool(self.ssh_user and (self.ssh_password or self.ssh_key))

    def endpoint(self) -> NodeEndpoint:
        return NodeEndpoint(
            id=self.id,
            name=self.name,
            address=self.address,
            port=self.port or 3001,
            transport=self.transport or TRANSPORT_HTTP,
            auth_token=self.auth_token,
            ssh_user=self.ssh_user,
            ssh_password=self.ssh_password,
            ssh_key=self.ssh_key,
            ssh_port=self.ssh_port or 22,
            host_key=self.host_key,
        )

    def to_dict(self) -> dict:
        """Public view of the node. Credentials are never included."""
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'port': self.port,
            'status': self.status,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None,
            'transport': self.transport,
            'last_transport': self.last_transport,
            'host_key': self.host_key,
            'resources': self.resources,
            'capabilities': self.capabilities,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
