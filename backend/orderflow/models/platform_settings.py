from datetime import datetime

from orderflow.extensions import db


class PlatformSettings(db.Model):
    __tablename__ = "platform_settings"

    id = db.Column(db.Integer, primary_key=True)

    # Percentages are stored as percent values (10.00 == 10%).
    platform_fee_percentage = db.Column(db.Numeric(6, 2), nullable=True)
    payment_processing_fee = db.Column(db.Numeric(6, 2), nullable=True)
    payment_processing_fee_fixed = db.Column(db.Numeric(8, 2), nullable=True)
    auto_capture_hours = db.Column(db.Integer, nullable=True)
    delivery_buffer_percentage = db.Column(db.Numeric(6, 2), nullable=True)

    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        def _num(value):
            return float(value) if value is not None else None

        return {
            "platform_fee_percentage": _num(self.platform_fee_percentage),
            "payment_processing_fee": _num(self.payment_processing_fee),
            "payment_processing_fee_fixed": _num(self.payment_processing_fee_fixed),
            "auto_capture_hours": int(self.auto_capture_hours) if self.auto_capture_hours is not None else None,
            "delivery_buffer_percentage": _num(self.delivery_buffer_percentage),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
