from datetime import datetime

from orderflow.extensions import db


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    event = db.Column(db.String(64), nullable=False)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=True)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False, unique=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "event": self.event,
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
