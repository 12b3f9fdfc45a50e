from fleetpanel.extensions import db
from fleetpanel.models import utcnow


class FailoverEvent(db.Model):
    """Append-only audit record of one failover attempt."""
    __tablename__ = 'failover_events'

    id = db.Column(db.Integer, primary_key=True)
    node_id = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)  # completed, partial, failed, error
    details = db.Column(db.JSON, nullable=True)
    server_count = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f'<FailoverEvent node={self.node_id} {self.status}>'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'node_id': self.node_id,
            'status': self.status,
            'details': self.details,
            'server_count': self.server_count,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
