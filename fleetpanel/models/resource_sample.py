from fleetpanel.extensions import db
from fleetpanel.models import utcnow


class ResourceSample(db.Model):
    __tablename__ = 'resource_samples'
    __table_args__ = (db.Index('ix_resource_samples_node_time', 'node_id', 'timestamp'),)

    id = db.Column(db.Integer, primary_key=True)
    node_id = db.Column(db.Integer, nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    cpu_usage = db.Column(db.Float, nullable=True)
    cpu_cores = db.Column(db.Integer, nullable=True)
    memory_total = db.Column(db.BigInteger, nullable=True)
    memory_used = db.Column(db.BigInteger, nullable=True)
    memory_free = db.Column(db.BigInteger, nullable=True)

    disk_usage = db.Column(db.JSON, nullable=True)          # one entry per mount
    network_interfaces = db.Column(db.JSON, nullable=True)
    system_info = db.Column(db.JSON, nullable=True)
    raw_data = db.Column(db.JSON, nullable=True)            # full normalized snapshot

    def __repr__(self):
        return f'<ResourceSample node={self.node_id} at={self.timestamp}>'

    @property
    def memory_usage_percent(self) -> float:
        if not self.memory_total:
            return 0.0
        return (self.memory_used or 0) / self.memory_total * 100
