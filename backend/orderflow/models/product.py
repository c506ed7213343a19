from datetime import datetime

from orderflow.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("seller_accounts.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    fulfillment_type = db.Column(db.String(32), nullable=False, default="ready_to_ship")
    status = db.Column(db.String(24), nullable=False, default="active", index=True)  # active | out_of_stock | draft

    # ready_to_ship
    stock = db.Column(db.Integer, nullable=False, default=0)
    # ready_to_ship and scheduled_order
    available_quantity = db.Column(db.Integer, nullable=False, default=0)

    # made_to_order
    remaining_capacity = db.Column(db.Integer, nullable=False, default=0)
    total_capacity = db.Column(db.Integer, nullable=True)
    capacity_period = db.Column(db.String(16), nullable=True)  # daily | weekly | monthly
    last_capacity_restore = db.Column(db.DateTime, nullable=True)

    # scheduled_order
    total_production_quantity = db.Column(db.Integer, nullable=True)
    next_available_date = db.Column(db.DateTime, nullable=True)
    schedule_type = db.Column(db.String(16), nullable=True)  # daily | weekly | monthly
    last_schedule_restore = db.Column(db.DateTime, nullable=True)

    sold_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "name": self.name,
            "price": round(float(self.price or 0), 2),
            "fulfillment_type": self.fulfillment_type,
            "status": self.status,
            "stock": int(self.stock or 0),
            "available_quantity": int(self.available_quantity or 0),
            "remaining_capacity": int(self.remaining_capacity or 0),
            "total_capacity": int(self.total_capacity) if self.total_capacity is not None else None,
            "capacity_period": self.capacity_period,
            "total_production_quantity": (
                int(self.total_production_quantity) if self.total_production_quantity is not None else None
            ),
            "next_available_date": self.next_available_date.isoformat() if self.next_available_date else None,
            "schedule_type": self.schedule_type,
            "sold_count": int(self.sold_count or 0),
        }
