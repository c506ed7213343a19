from datetime import datetime

from orderflow.extensions import db


class SellerAccount(db.Model):
    __tablename__ = "seller_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, unique=True, index=True)
    display_name = db.Column(db.String(160), nullable=False, default="")

    # Percent, e.g. 15.00. Null falls back to the platform default.
    commission_rate = db.Column(db.Numeric(6, 2), nullable=True)
    payout_destination = db.Column(db.String(120), nullable=True)
    personal_delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    pickup_address = db.Column(db.String(300), nullable=True)
    pickup_lat = db.Column(db.Float, nullable=True)
    pickup_lng = db.Column(db.Float, nullable=True)
    phone = db.Column(db.String(40), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def owner_ref(self) -> str:
        return f"user:{int(self.user_id)}"

    def pickup(self) -> dict:
        return {
            "address": self.pickup_address or "",
            "lat": self.pickup_lat,
            "lng": self.pickup_lng,
            "name": self.display_name or "",
            "phone": self.phone or "",
        }

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "display_name": self.display_name or "",
            "commission_rate": float(self.commission_rate) if self.commission_rate is not None else None,
            "has_payout_destination": bool((self.payout_destination or "").strip()),
            "personal_delivery_fee": round(float(self.personal_delivery_fee or 0), 2),
        }
