from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from orderflow.errors import ExternalServiceError, InconsistentState, SettlementResult
from orderflow.extensions import db
from orderflow.integrations.payments.base import PaymentProcessor
from orderflow.models import Order, PayoutTransfer, RevenueRecord
from orderflow.services import wallet_service
from orderflow.services.notification_service import Notifier
from orderflow.services.order_lookup import load_order, seller_for
from orderflow.services.platform_settings_service import get_commission_rate, get_fee_schedule
from orderflow.utils.fees import FeeBreakdown, calculate_fee, to_money, to_percent
from orderflow.utils.job_runs import record_job_run
from orderflow.utils.timeline import record_order_event

SETTLED_STATUSES = ("delivered", "picked_up", "completed")
CLOSED_STATUSES = ("cancelled", "declined")
WALLET = "internal_wallet"
CARD = "processor_card"


def _now():
    return datetime.utcnow()


def _error_text(kind: str, message: str) -> str:
    return f"{kind}:{message}"[:1000]


def fee_base(order: Order) -> Decimal:
    """Amount the commission applies to.

    A professional courier fee is passed through to the courier, so only the goods
    subtotal counts. Pickup and personal delivery fees are seller revenue.
    """
    if (order.delivery_method or "") == "professionalDelivery":
        return to_money(order.subtotal or 0)
    return to_money(order.total_amount or 0)


def absorbed_delivery_cost(order: Order) -> Decimal:
    if (order.cost_absorption_response or "") != "accepted":
        return Decimal("0.00")
    return to_money(order.cost_absorption_excess or 0)


class SettlementCoordinator:
    """Authorize, capture, refund and revenue recognition for one order at a time.

    Every operation re-reads the order and is safe to call again; the persisted
    payment status, the capture claim and the RevenueRecord row are the witnesses.
    """

    def __init__(self, processor: PaymentProcessor, notifier: Notifier | None = None):
        self.processor = processor
        self.notifier = notifier

    def _notify(self, user_ref, event_type: str, payload: dict) -> None:
        if self.notifier is not None:
            self.notifier.notify(user_ref, event_type, payload)

    def record_error(self, order_id: int, kind: str, message: str) -> None:
        try:
            Order.query.filter(Order.id == int(order_id)).update(
                {Order.last_settlement_error: _error_text(kind, message)},
                synchronize_session=False,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("settlement_error_record_failed order_id=%s", order_id)

    def _fees_for(self, order: Order) -> FeeBreakdown:
        schedule = get_fee_schedule()
        if order.commission_rate is not None:
            rate = to_percent(order.commission_rate)
        else:
            rate = get_commission_rate(seller_for(order))
        return calculate_fee(fee_base(order), rate, schedule.processing_rate_percent, schedule.processing_fixed)

    # authorize

    def authorize(self, *, amount, customer_ref: str, guest: bool = False, metadata: dict | None = None) -> SettlementResult:
        value = to_money(amount)
        currency = current_app.config.get("CURRENCY", "CAD")
        try:
            hold = self.processor.authorize(
                amount=value,
                currency=currency,
                customer_ref=customer_ref,
                capture=bool(guest),
                metadata=metadata,
            )
        except ExternalServiceError as exc:
            current_app.logger.warning("authorize_failed customer_ref=%s kind=%s error=%s", customer_ref, exc.kind, exc.message)
            return SettlementResult.failure(code="authorization_failed", message=exc.message, kind=exc.kind)

        authorized_at = _now()
        hours = int(current_app.config.get("HOLD_EXPIRY_HOURS") or 168)
        status = "captured" if hold.status == "captured" else "authorized"
        return SettlementResult.success(
            status,
            hold_ref=hold.hold_ref,
            hold_status="captured" if status == "captured" else "held",
            authorized_at=authorized_at,
            expires_at=authorized_at + timedelta(hours=hours),
            amount=value,
        )

    # capture

    def capture(self, order_id) -> SettlementResult:
        order = load_order(order_id, required=False)
        if order is None:
            return SettlementResult.failure(code="order_not_found", kind=ExternalServiceError.FATAL)
        oid = int(order.id)

        if order.payment_method == WALLET or order.payment_status in ("captured", "refunded"):
            revenue = None
            if order.payment_status in ("captured", "paid") and order.status in SETTLED_STATUSES:
                revenue = self.recognize_revenue(oid).status
            return SettlementResult.already("already_captured", payment_status=order.payment_status, revenue=revenue)

        if order.payment_status != "authorized" or not order.hold_ref:
            return SettlementResult.failure(
                code="not_capturable",
                message=f"payment_status={order.payment_status}",
                kind=ExternalServiceError.FATAL,
            )
        if order.status in CLOSED_STATUSES:
            return SettlementResult.failure(
                code="not_capturable",
                message=f"status={order.status}",
                kind=ExternalServiceError.FATAL,
            )

        token = uuid.uuid4().hex
        now = _now()
        stale_before = now - timedelta(seconds=int(current_app.config.get("CAPTURE_CLAIM_STALE_SECONDS") or 300))
        claimed = Order.query.filter(
            Order.id == oid,
            Order.payment_status == "authorized",
            Order.status.notin_(CLOSED_STATUSES),
            or_(Order.capture_claim_token.is_(None), Order.capture_claimed_at < stale_before),
        ).update(
            {Order.capture_claim_token: token, Order.capture_claimed_at: now},
            synchronize_session=False,
        )
        db.session.commit()
        if claimed != 1:
            return SettlementResult.already("already_captured", code="capture_in_progress")

        hold_ref = order.hold_ref
        try:
            self.processor.capture(hold_ref)
        except ExternalServiceError as exc:
            if not exc.already_done and not self._hold_already_captured(hold_ref):
                self._release_claim(oid, token, exc)
                current_app.logger.warning("capture_failed order_id=%s kind=%s error=%s", oid, exc.kind, exc.message)
                return SettlementResult.failure(code="capture_failed", message=exc.message, kind=exc.kind)
            current_app.logger.info("capture_already_done order_id=%s hold_ref=%s", oid, hold_ref)

        return self._finish_capture(oid, token)

    def _hold_already_captured(self, hold_ref: str) -> bool:
        try:
            return self.processor.retrieve(hold_ref).status == "captured"
        except ExternalServiceError:
            return False

    def _release_claim(self, order_id: int, token: str, exc: ExternalServiceError) -> None:
        Order.query.filter(Order.id == order_id, Order.capture_claim_token == token).update(
            {
                Order.capture_claim_token: None,
                Order.capture_claimed_at: None,
                Order.last_settlement_error: _error_text(exc.kind, exc.message),
            },
            synchronize_session=False,
        )
        db.session.commit()

    def _finish_capture(self, order_id: int, token: str) -> SettlementResult:
        order = load_order(order_id)
        fees = self._fees_for(order)
        now = _now()
        updated = Order.query.filter(Order.id == order_id, Order.capture_claim_token == token).update(
            {
                Order.payment_status: "captured",
                Order.hold_status: "captured",
                Order.captured_at: now,
                Order.commission_rate: fees.commission_rate,
                Order.platform_fee: fees.platform_fee,
                Order.processing_fee: fees.processing_fee,
                Order.net_amount: fees.net_amount,
                Order.capture_claim_token: None,
                Order.capture_claimed_at: None,
                Order.last_settlement_error: None,
                Order.updated_at: now,
            },
            synchronize_session=False,
        )
        db.session.commit()
        if updated != 1:
            current_app.logger.warning("capture_claim_lost order_id=%s", order_id)
            return SettlementResult.already("already_captured", code="capture_claim_lost")

        record_order_event(order_id, "payment_captured", metadata=fees.to_dict())
        order = load_order(order_id)
        if order.status in CLOSED_STATUSES:
            # Cancelled while the processor call was in flight.
            exc = InconsistentState(f"order {order_id} was {order.status} during capture")
            current_app.logger.error("capture_after_close order_id=%s status=%s code=%s", order_id, order.status, exc.code)
            record_order_event(order_id, "capture_after_close", note=exc.message)
            refund = self.refund(order_id, f"order {order.status} during capture")
            if not refund.ok:
                self.record_error(order_id, exc.code, f"{exc.message}; refund {refund.code}")
            return SettlementResult.success("captured", fees=fees.to_dict(), refund=refund.to_dict())

        seller = seller_for(order)
        if seller is not None:
            self._notify(seller.owner_ref, "payment_captured", {"order_id": order_id, "net_amount": float(fees.net_amount)})

        revenue = None
        if order.status in SETTLED_STATUSES:
            revenue = self.recognize_revenue(order_id).status
        return SettlementResult.success("captured", fees=fees.to_dict(), revenue=revenue)

    # revenue

    def recognize_revenue(self, order_id) -> SettlementResult:
        """Credit the seller net and the platform fee exactly once per order."""
        order = load_order(order_id, required=False)
        if order is None:
            return SettlementResult.failure(code="order_not_found", kind=ExternalServiceError.FATAL)
        oid = int(order.id)
        if order.payment_status not in ("captured", "paid"):
            return SettlementResult.failure(
                code="payment_not_collected",
                message=f"payment_status={order.payment_status}",
                kind=ExternalServiceError.FATAL,
            )
        existing = RevenueRecord.query.filter_by(order_id=oid).first()
        if existing is not None:
            return SettlementResult.already("already_recognized", revenue_id=int(existing.id))

        seller = seller_for(order)
        if seller is None:
            exc = InconsistentState(f"order {oid} has no seller")
            current_app.logger.error("revenue_seller_missing order_id=%s code=%s", oid, exc.code)
            self.record_error(oid, exc.code, exc.message)
            return SettlementResult.failure(code=exc.code, message=exc.message, kind=ExternalServiceError.FATAL)

        if order.net_amount is not None and order.commission_rate is not None:
            fees = FeeBreakdown(
                amount=fee_base(order),
                commission_rate=to_percent(order.commission_rate),
                platform_fee=to_money(order.platform_fee or 0),
                processing_fee=to_money(order.processing_fee or 0),
                net_amount=to_money(order.net_amount),
            )
        else:
            fees = self._fees_for(order)
        absorbed = absorbed_delivery_cost(order)
        seller_net = to_money(fees.net_amount - absorbed)
        now = _now()

        # Accounts exist before the revenue transaction opens.
        wallet_service.ensure_account(seller.owner_ref)
        wallet_service.ensure_account(wallet_service.PLATFORM_ACCOUNT)
        db.session.commit()

        try:
            record = RevenueRecord(
                order_id=oid,
                seller_id=int(seller.id),
                subtotal=to_money(order.subtotal or 0),
                delivery_fee=to_money(order.delivery_fee or 0),
                gross_amount=fees.amount,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                absorbed_delivery_cost=absorbed,
                net_amount=seller_net,
                commission_rate=fees.commission_rate,
                captured_at=order.captured_at,
                recognized_at=now,
            )
            db.session.add(record)
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            return SettlementResult.already("already_recognized")

        try:
            if order.commission_rate is None:
                order.commission_rate = fees.commission_rate
                order.platform_fee = fees.platform_fee
                order.processing_fee = fees.processing_fee
                order.net_amount = fees.net_amount
            if seller_net > 0:
                wallet_service.credit(
                    seller.owner_ref,
                    seller_net,
                    type="order_revenue",
                    description=f"Revenue for order #{oid}",
                    related_order_id=oid,
                    reference=f"order:{oid}:revenue",
                    metadata={"fees": fees.to_dict(), "absorbed_delivery_cost": float(absorbed)},
                    commit=False,
                )
            elif seller_net < 0:
                current_app.logger.warning("revenue_net_negative order_id=%s net=%s", oid, seller_net)
            if fees.platform_fee > 0:
                wallet_service.credit(
                    wallet_service.PLATFORM_ACCOUNT,
                    fees.platform_fee,
                    type="platform_fee",
                    description=f"Platform fee for order #{oid}",
                    related_order_id=oid,
                    reference=f"order:{oid}:platform_fee",
                    commit=False,
                )
            order.last_settlement_error = None
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return SettlementResult.already("already_recognized")
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("revenue_failed order_id=%s", oid)
            self.record_error(oid, "revenue_failed", str(exc))
            return SettlementResult.failure(code="revenue_failed", message=str(exc))

        record_order_event(
            oid,
            "revenue_recognized",
            metadata={"net_amount": seller_net, "platform_fee": fees.platform_fee, "absorbed": absorbed},
        )
        self._notify(seller.owner_ref, "revenue_recognized", {"order_id": oid, "net_amount": float(seller_net)})

        payout = None
        if seller_net > 0:
            payout = self.enqueue_payout_transfer(oid)
        return SettlementResult.success(
            "recognized",
            revenue=record.to_dict(),
            payout=payout.to_dict() if payout is not None else None,
        )

    # payouts

    def enqueue_payout_transfer(self, order_id: int) -> SettlementResult | None:
        record = RevenueRecord.query.filter_by(order_id=int(order_id)).first()
        order = load_order(order_id)
        seller = seller_for(order)
        if record is None or seller is None:
            return None
        destination = (seller.payout_destination or "").strip()
        if not destination:
            exc = InconsistentState(f"seller {seller.id} has no payout destination")
            current_app.logger.warning(
                "payout_destination_missing order_id=%s seller_id=%s code=%s", order_id, seller.id, exc.code
            )
            record_order_event(int(order_id), "payout_skipped", note=exc.message)
            return None

        row = PayoutTransfer.query.filter_by(order_id=int(order_id)).first()
        if row is None:
            row = PayoutTransfer(
                order_id=int(order_id),
                seller_id=int(seller.id),
                amount=to_money(record.net_amount),
                destination=destination,
                status="queued",
            )
            db.session.add(row)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                row = PayoutTransfer.query.filter_by(order_id=int(order_id)).first()
        return self.dispatch_payout_transfer(int(row.id))

    def dispatch_payout_transfer(self, transfer_id: int) -> SettlementResult:
        if current_app.config.get("PAYOUT_TRANSFER_QUEUE"):
            try:
                from orderflow.tasks.settlement_tasks import execute_payout_transfer_task

                execute_payout_transfer_task.delay(int(transfer_id))
                return SettlementResult.success("queued", transfer_id=int(transfer_id))
            except Exception:
                db.session.rollback()
                current_app.logger.warning("payout_enqueue_failed transfer_id=%s running_inline=1", transfer_id)
        return self.execute_payout_transfer(transfer_id)

    def execute_payout_transfer(self, transfer_id: int) -> SettlementResult:
        row = db.session.get(PayoutTransfer, int(transfer_id), populate_existing=True)
        if row is None:
            return SettlementResult.failure(code="transfer_not_found", kind=ExternalServiceError.FATAL)
        if row.status == "sent":
            return SettlementResult.already("already_sent", transfer_ref=row.transfer_ref or "")

        claimed = PayoutTransfer.query.filter(
            PayoutTransfer.id == row.id,
            PayoutTransfer.status.in_(("queued", "failed")),
        ).update(
            {
                PayoutTransfer.status: "sending",
                PayoutTransfer.attempts: PayoutTransfer.attempts + 1,
                PayoutTransfer.updated_at: _now(),
            },
            synchronize_session=False,
        )
        db.session.commit()
        if claimed != 1:
            return SettlementResult.already("transfer_in_progress")

        row = db.session.get(PayoutTransfer, int(transfer_id), populate_existing=True)
        transfer_ref = ""
        try:
            result = self.processor.transfer(
                amount=to_money(row.amount),
                currency=current_app.config.get("CURRENCY", "CAD"),
                destination=row.destination,
                reference=f"payout:order:{int(row.order_id)}",
            )
            transfer_ref = result.transfer_ref
        except ExternalServiceError as exc:
            if not exc.already_done:
                row.status = "failed"
                row.last_error = _error_text(exc.kind, exc.message)
                row.updated_at = _now()
                db.session.commit()
                current_app.logger.warning("payout_transfer_failed transfer_id=%s kind=%s error=%s", row.id, exc.kind, exc.message)
                return SettlementResult.failure(code="transfer_failed", message=exc.message, kind=exc.kind)

        row.status = "sent"
        row.transfer_ref = transfer_ref or row.transfer_ref
        row.sent_at = _now()
        row.updated_at = row.sent_at
        row.last_error = None
        seller = seller_for(load_order(row.order_id))
        try:
            wallet_service.debit(
                seller.owner_ref,
                row.amount,
                type="payout",
                description=f"Payout for order #{int(row.order_id)}",
                related_order_id=int(row.order_id),
                reference=f"payout:{int(row.id)}",
                commit=False,
            )
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(
                "payout_ledger_mismatch transfer_id=%s code=%s error=%s", transfer_id, InconsistentState.code, exc
            )
            row = db.session.get(PayoutTransfer, int(transfer_id), populate_existing=True)
            row.status = "sent"
            row.transfer_ref = transfer_ref or row.transfer_ref
            row.sent_at = _now()
            row.last_error = _error_text(InconsistentState.code, str(exc))
            db.session.commit()

        record_order_event(int(row.order_id), "payout_sent", metadata={"transfer_ref": row.transfer_ref or ""})
        if seller is not None:
            self._notify(seller.owner_ref, "payout_sent", {"order_id": int(row.order_id), "amount": float(row.amount)})
        return SettlementResult.success("sent", transfer_ref=row.transfer_ref or "")

    # refund

    def refund(self, order_id, reason: str = "") -> SettlementResult:
        """Return the buyer's money before capture settles the sale.

        An uncaptured hold is released locally; it lapses at the processor on its own.
        """
        order = load_order(order_id, required=False)
        if order is None:
            return SettlementResult.failure(code="order_not_found", kind=ExternalServiceError.FATAL)
        oid = int(order.id)
        status = order.payment_status
        if status == "refunded":
            return SettlementResult.already("already_refunded")
        if status in ("pending", "failed"):
            return SettlementResult.success("nothing_to_refund", payment_status=status)

        amount = to_money(order.total_amount or 0)
        if status == "authorized":
            updated = Order.query.filter(
                Order.id == oid,
                Order.payment_status == "authorized",
                Order.capture_claim_token.is_(None),
            ).update(
                {
                    Order.payment_status: "refunded",
                    Order.hold_status: "released",
                    Order.last_settlement_error: None,
                    Order.updated_at: _now(),
                },
                synchronize_session=False,
            )
            db.session.commit()
            if updated != 1:
                fresh = load_order(oid)
                if fresh.payment_status == "refunded":
                    return SettlementResult.already("already_refunded")
                if fresh.payment_status in ("paid", "captured"):
                    return self.refund(oid, reason)
                current_app.logger.warning("refund_deferred order_id=%s reason=capture_in_progress", oid)
                self.record_error(oid, "capture_in_progress", "refund deferred until the in-flight capture settles")
                return SettlementResult.failure(
                    code="capture_in_progress",
                    message=f"payment_status={fresh.payment_status}",
                    kind=ExternalServiceError.RETRYABLE,
                )
            method = "hold_released"
        elif status in ("paid", "captured"):
            wallet_service.ensure_account(order.buyer_ref)
            db.session.commit()
            updated = Order.query.filter(Order.id == oid, Order.payment_status == status).update(
                {Order.payment_status: "refunded", Order.last_settlement_error: None, Order.updated_at: _now()},
                synchronize_session=False,
            )
            if updated != 1:
                db.session.rollback()
                return SettlementResult.already("already_refunded")
            try:
                wallet_service.credit(
                    order.buyer_ref,
                    amount,
                    type="order_refund",
                    description=f"Refund for order #{oid}" + (f": {reason}" if reason else ""),
                    related_order_id=oid,
                    reference=f"order:{oid}:refund",
                    commit=False,
                )
                db.session.commit()
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception("refund_failed order_id=%s", oid)
                self.record_error(oid, "refund_failed", str(exc))
                return SettlementResult.failure(code="refund_failed", message=str(exc))
            method = "wallet_credit"
        else:
            return SettlementResult.failure(
                code="not_refundable",
                message=f"payment_status={status}",
                kind=ExternalServiceError.FATAL,
            )

        record_order_event(oid, "payment_refunded", note=reason, metadata={"amount": amount, "method": method})
        self._notify(order.buyer_ref, "order_refunded", {"order_id": oid, "amount": float(amount), "reason": reason})
        return SettlementResult.success("refunded", amount=float(amount), method=method)

    # sweep

    def run_auto_capture(self, *, hours: int | None = None, limit: int = 100) -> dict:
        started = _now()
        if hours is None:
            hours = get_fee_schedule().auto_capture_hours
        cutoff = started - timedelta(hours=int(hours))

        ids = [
            int(row.id)
            for row in Order.query.filter(
                Order.status.in_(SETTLED_STATUSES),
                Order.payment_status == "authorized",
                Order.updated_at <= cutoff,
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        ]

        captured = 0
        already = 0
        failed = 0
        errors: list[dict] = []
        for oid in ids:
            try:
                result = self.capture(oid)
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception("auto_capture_order_failed order_id=%s", oid)
                result = SettlementResult.failure(code="capture_error", message=str(exc))
            if result.ok and result.status == "captured":
                captured += 1
            elif result.ok:
                already += 1
            else:
                failed += 1
                errors.append({"order_id": oid, "code": result.code, "message": result.message, "kind": result.kind})

        refunded = 0
        unrefunded = (
            Order.query.filter(
                Order.status.in_(CLOSED_STATUSES),
                Order.payment_status.in_(("paid", "captured", "authorized")),
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        )
        for oid in [int(o.id) for o in unrefunded]:
            try:
                result = self.refund(oid, "refund retry")
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception("refund_retry_failed order_id=%s", oid)
                result = SettlementResult.failure(code="refund_error", message=str(exc))
            if result.ok and result.status == "refunded":
                refunded += 1
            elif not result.ok:
                failed += 1
                errors.append({"order_id": oid, "code": result.code, "message": result.message, "kind": result.kind})

        backfilled = 0
        pending_revenue = (
            Order.query.outerjoin(RevenueRecord, RevenueRecord.order_id == Order.id)
            .filter(
                Order.status.in_(SETTLED_STATUSES),
                Order.payment_status.in_(("captured", "paid")),
                RevenueRecord.id.is_(None),
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        )
        for oid in [int(o.id) for o in pending_revenue]:
            result = self.recognize_revenue(oid)
            if result.ok and result.status == "recognized":
                backfilled += 1
            elif not result.ok:
                errors.append({"order_id": oid, "code": result.code, "message": result.message, "kind": result.kind})

        warn_hours = int(current_app.config.get("HOLD_EXPIRY_WARNING_HOURS") or 24)
        expiring = [
            {
                "order_id": int(o.id),
                "status": o.status,
                "hold_expires_at": o.hold_expires_at.isoformat() if o.hold_expires_at else None,
                "expired": bool(o.hold_expires_at and o.hold_expires_at <= started),
            }
            for o in Order.query.filter(
                Order.payment_status == "authorized",
                Order.hold_expires_at.isnot(None),
                Order.hold_expires_at <= started + timedelta(hours=warn_hours),
            )
            .order_by(Order.hold_expires_at.asc())
            .limit(int(limit))
            .all()
        ]
        if expiring:
            current_app.logger.warning("holds_expiring count=%s order_ids=%s", len(expiring), [e["order_id"] for e in expiring])

        record_job_run(
            job_name="auto_capture",
            ok=failed == 0,
            started_at=started,
            processed=captured + refunded + backfilled,
            error="; ".join(f"{e['order_id']}:{e['code']}" for e in errors) or None,
        )
        return {
            "ok": True,
            "captured_count": captured,
            "already_captured": already,
            "failed": failed,
            "refunds_retried": refunded,
            "revenue_backfilled": backfilled,
            "errors": errors,
            "expiring_holds": expiring,
            "processed_at": _now().isoformat(),
        }
