from datetime import datetime

from orderflow.extensions import db


class IdempotencyKey(db.Model):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), nullable=False, index=True)
    scope = db.Column(db.String(128), nullable=False, default="")
    actor_ref = db.Column(db.String(160), nullable=True)
    request_hash = db.Column(db.String(64), nullable=False, default="")
    response_json = db.Column(db.Text, nullable=True)
    response_code = db.Column(db.Integer, nullable=False, default=200)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
