from datetime import datetime

from orderflow.extensions import db


class RevenueRecord(db.Model):
    __tablename__ = "revenue_records"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    seller_id = db.Column(db.Integer, nullable=True, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    gross_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    processing_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    absorbed_delivery_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    commission_rate = db.Column(db.Numeric(6, 2), nullable=False, default=0)

    captured_at = db.Column(db.DateTime, nullable=True)
    recognized_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id) if self.seller_id is not None else None,
            "subtotal": round(float(self.subtotal or 0), 2),
            "delivery_fee": round(float(self.delivery_fee or 0), 2),
            "gross_amount": round(float(self.gross_amount or 0), 2),
            "platform_fee": round(float(self.platform_fee or 0), 2),
            "processing_fee": round(float(self.processing_fee or 0), 2),
            "absorbed_delivery_cost": round(float(self.absorbed_delivery_cost or 0), 2),
            "net_amount": round(float(self.net_amount or 0), 2),
            "commission_rate": float(self.commission_rate or 0),
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "recognized_at": self.recognized_at.isoformat() if self.recognized_at else None,
        }
