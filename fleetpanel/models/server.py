from fleetpanel.extensions import db
from fleetpanel.models import utcnow


class Server(db.Model):
    """A hosted application/game server process owned by at most one node."""
    __tablename__ = 'servers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(32), default='stopped')  # running, stopped, creating, error
    pid = db.Column(db.Integer, nullable=True)

    # Plain column, not a foreign key: a server keeps working after its node
    # row is deleted and is moved by explicit reassignment only.
    node_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<Server {self.name} (node {self.node_id}, {self.status})>'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'pid': self.pid,
            'node_id': self.node_id,
        }
