from datetime import datetime

from orderflow.extensions import db


class WalletAccount(db.Model):
    __tablename__ = "wallet_accounts"

    id = db.Column(db.Integer, primary_key=True)
    owner_ref = db.Column(db.String(160), nullable=False, unique=True, index=True)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="CAD")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "owner_ref": self.owner_ref,
            "balance": round(float(self.balance or 0), 2),
            "currency": self.currency,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("wallet_accounts.id"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    # Signed: credits positive, debits negative.
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    balance_before = db.Column(db.Numeric(14, 2), nullable=True)
    balance_after = db.Column(db.Numeric(14, 2), nullable=True)
    description = db.Column(db.String(300), nullable=True)
    related_order_id = db.Column(db.Integer, nullable=True, index=True)
    reference = db.Column(db.String(160), nullable=True, index=True)
    metadata_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "account_id": int(self.account_id),
            "type": self.type,
            "amount": round(float(self.amount or 0), 2),
            "balance_before": round(float(self.balance_before), 2) if self.balance_before is not None else None,
            "balance_after": round(float(self.balance_after), 2) if self.balance_after is not None else None,
            "description": self.description or "",
            "related_order_id": int(self.related_order_id) if self.related_order_id is not None else None,
            "reference": self.reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
