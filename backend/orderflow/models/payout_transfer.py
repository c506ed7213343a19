from datetime import datetime

from orderflow.extensions import db


class PayoutTransfer(db.Model):
    __tablename__ = "payout_transfers"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    destination = db.Column(db.String(120), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="queued", index=True)  # queued | sending | sent | failed
    transfer_ref = db.Column(db.String(120), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id),
            "amount": round(float(self.amount or 0), 2),
            "status": self.status,
            "transfer_ref": self.transfer_ref or "",
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
