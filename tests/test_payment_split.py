from __future__ import annotations

import dataclasses
import logging

import pytest
from sqlalchemy import select
from sqlalchemy.orm.attributes import set_committed_value

from apps.doctors.app.config import AppointmentStatus, LedgerCategory, PaymentStatus
from apps.doctors.app.errors import (
    ALREADY_PAID,
    ConfigurationError,
    Conflict,
    GatewayError,
    InvalidTransition,
    PaymentVerificationFailed,
    ValidationError,
)
from apps.doctors.app.gateway import expected_signature, signature_matches
from apps.doctors.app.models import Appointment, Wallet, WalletLedgerEntry
from apps.doctors.app.payments import PaymentSplitEngine, split_fee


def _order(clinic, patient, aid, amount=None):
    with clinic.session() as s:
        return clinic.payments(s).create_order(patient.user_id, aid, amount if amount is not None else clinic.fee_major)


def _verify(clinic, patient, aid, order_id, payment_id="pay_1", signature=None):
    sig = signature if signature is not None else expected_signature(clinic.settings.razorpay_key_secret, order_id, payment_id)
    with clinic.session() as s:
        return clinic.payments(s).verify_payment(patient.user_id, aid, order_id, payment_id, sig)


def _ledger(clinic, aid):
    with clinic.session() as s:
        rows = s.execute(
            select(WalletLedgerEntry.owner_user_id, WalletLedgerEntry.category, WalletLedgerEntry.amount_cents).where(
                WalletLedgerEntry.related_appointment_id == aid
            )
        ).all()
    return {(owner, cat): amount for owner, cat, amount in rows}


def _balance(clinic, user_id):
    with clinic.session() as s:
        return s.execute(select(Wallet.balance_cents).where(Wallet.owner_user_id == user_id)).scalar() or 0


def test_signature_is_hmac_of_order_and_payment():
    sig = expected_signature("secret", "order_1", "pay_1")
    assert signature_matches("secret", "order_1", "pay_1", sig)
    assert not signature_matches("secret", "order_1", "pay_2", sig)
    assert not signature_matches("other", "order_1", "pay_1", sig)


def test_split_fee_adds_up():
    for fee in (1, 99, 100_000, 123_457):
        doctor, platform = split_fee(fee, 80)
        assert doctor + platform == fee
    assert split_fee(100_000, 80) == (80_000, 20_000)


def test_order_locks_slot_and_is_reused_on_retry(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    first = _order(clinic, p, aid)
    assert first.amount == 100_000
    assert first.currency == "INR"
    assert first.key_id == clinic.settings.razorpay_key_id
    assert clinic.gateway.calls[0][2] == clinic.get(aid).custom_id

    again = _order(clinic, p, aid)
    assert again.order_id == first.order_id
    assert len(clinic.gateway.calls) == 1
    assert clinic.get(aid).checkout_lock_until is not None


def test_order_amount_must_match_fee(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    with pytest.raises(ValidationError):
        _order(clinic, p, aid, amount=999.99)
    with pytest.raises(ValidationError):
        _order(clinic, p, aid, amount=1000.001)
    assert clinic.gateway.calls == []


def test_gateway_failure_keeps_lock_for_retry(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    clinic.gateway.fail = True
    with pytest.raises(GatewayError):
        _order(clinic, p, aid)
    held = clinic.get(aid).checkout_lock_until
    assert held is not None

    clinic.gateway.fail = False
    res = _order(clinic, p, aid)
    assert res.order_id == "order_test_1"
    assert clinic.get(aid).checkout_lock_until == held


def test_missing_gateway_keys_is_a_configuration_error(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    unconfigured = dataclasses.replace(clinic.settings, razorpay_key_id="", razorpay_key_secret="")
    with clinic.session() as s:
        with pytest.raises(ConfigurationError) as ei:
            PaymentSplitEngine(s, unconfigured, clinic.clock, gateway=clinic.gateway).create_order(
                p.user_id, aid, clinic.fee_major
            )
    assert ei.value.status_code == 503
    assert set(ei.value.details["missing"]) == {"RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"}


def test_verify_credits_doctor_and_platform(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    order = _order(clinic, p, aid)
    a = _verify(clinic, p, aid, order.order_id)

    assert a.payment_status is PaymentStatus.PAID
    assert a.checkout_lock_until is None
    assert a.doctor_earnings_cents + a.admin_commission_cents == a.consultation_fee_cents
    assert _ledger(clinic, aid) == {
        ("doc-1", LedgerCategory.CONSULTATION_EARNINGS): 80_000,
        ("admin-1", LedgerCategory.PLATFORM_COMMISSION): 20_000,
    }
    assert _balance(clinic, "doc-1") == 80_000
    assert _balance(clinic, "admin-1") == 20_000
    assert "payment_success" in clinic.notifier.kinds_for("patient-1")
    assert "commission" in clinic.notifier.kinds_for("admin-1")


def test_replayed_verification_is_already_paid(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    order = _order(clinic, p, aid)
    _verify(clinic, p, aid, order.order_id)
    with pytest.raises(Conflict) as ei:
        _verify(clinic, p, aid, order.order_id)
    assert ei.value.code == ALREADY_PAID
    assert _balance(clinic, "doc-1") == 80_000


def test_tampered_signature_fails_and_frees_slot(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    order = _order(clinic, p, aid)
    with pytest.raises(PaymentVerificationFailed):
        _verify(clinic, p, aid, order.order_id, signature="0" * 64)
    a = clinic.get(aid)
    assert a.payment_status is PaymentStatus.FAILED
    assert a.checkout_lock_until is None
    assert _ledger(clinic, aid) == {}

    with pytest.raises(PaymentVerificationFailed):
        _verify(clinic, p, aid, "order_someone_else")

    # Another patient can take the slot now.
    other = clinic.patient(2)
    assert _order(clinic, other, clinic.book(other)).order_id


def test_verify_after_cancel_does_not_mark_paid(clinic):
    p = clinic.patient(1)
    aid = clinic.book(p)
    order = _order(clinic, p, aid)
    with clinic.session() as s:
        clinic.lifecycle(s).cancel(aid, p, "found another doctor")
    with pytest.raises(InvalidTransition):
        _verify(clinic, p, aid, order.order_id)
    a = clinic.get(aid)
    assert a.payment_status is PaymentStatus.PENDING
    assert a.status is AppointmentStatus.CANCELLED


def test_cancel_landing_after_the_status_read_still_flags_a_refund(clinic, monkeypatch, caplog):
    p = clinic.patient(1)
    aid = clinic.book(p)
    order = _order(clinic, p, aid)
    with clinic.session() as s:
        clinic.lifecycle(s).cancel(aid, p, "found another doctor")

    owned = PaymentSplitEngine._owned

    def stale_owned(self, appointment_id, patient_id):
        # The engine still sees the appointment as pending.
        a = owned(self, appointment_id, patient_id)
        set_committed_value(a, "status", AppointmentStatus.PENDING)
        return a

    monkeypatch.setattr(PaymentSplitEngine, "_owned", stale_owned)
    with caplog.at_level(logging.ERROR, logger="carebook.payments"):
        with pytest.raises(InvalidTransition):
            _verify(clinic, p, aid, order.order_id, payment_id="pay_late")
    assert any("gateway refund required" in r.getMessage() for r in caplog.records)
    a = clinic.get(aid)
    assert a.payment_status is PaymentStatus.PENDING
    assert a.status is AppointmentStatus.CANCELLED


def test_patient_cancellation_refund_split(clinic):
    p = clinic.patient(1)
    aid = clinic.confirmed_paid(p)
    with clinic.session() as s:
        a = clinic.lifecycle(s).cancel(aid, p, "feeling better")

    assert a.payment_status is PaymentStatus.REFUNDED
    assert (a.refund_cents, a.admin_commission_cents, a.doctor_earnings_cents) == (70_000, 10_000, 20_000)
    assert _balance(clinic, "patient-1") == 70_000
    assert _balance(clinic, "doc-1") == 20_000
    assert _balance(clinic, "admin-1") == 10_000
    ledger = _ledger(clinic, aid)
    assert ledger[("patient-1", LedgerCategory.REFUND)] == 70_000
    assert ledger[("doc-1", LedgerCategory.CANCELLATION_ADJUSTMENT)] == -60_000
    assert ledger[("admin-1", LedgerCategory.CANCELLATION_ADJUSTMENT)] == -10_000


def test_doctor_cancellation_refunds_everything(clinic):
    p = clinic.patient(1)
    aid = clinic.confirmed_paid(p)
    with clinic.session() as s:
        a = clinic.lifecycle(s).cancel(aid, clinic.doctor, "emergency")
    assert a.refund_cents == 100_000
    assert _balance(clinic, "patient-1") == 100_000
    assert _balance(clinic, "doc-1") == 0
    assert _balance(clinic, "admin-1") == 0


def test_settlement_runs_once(clinic):
    p = clinic.patient(1)
    aid = clinic.confirmed_paid(p)
    with clinic.session() as s:
        clinic.lifecycle(s).cancel(aid, p, "feeling better")
    with clinic.session() as s:
        a = s.get(Appointment, aid)
        again = clinic.payments(s).settle_cancellation(a, a.cancelled_by)
    assert again is not None
    assert _balance(clinic, "patient-1") == 70_000
    assert len(_ledger(clinic, aid)) == 5


def test_wallet_views(clinic):
    p = clinic.patient(1)
    clinic.confirmed_paid(p)
    with clinic.session() as s:
        pay = clinic.payments(s)
        assert pay.wallet_summary("doc-1").balance_cents == 80_000
        assert pay.wallet_summary("nobody").balance_cents == 0
        rows, total = pay.ledger("doc-1", page=1, limit=10)
    assert total == 1
    assert rows[0].category is LedgerCategory.CONSULTATION_EARNINGS


def test_platform_overview_and_commission_ledger(clinic):
    first = clinic.confirmed_paid(clinic.patient(1))
    with clinic.session() as s:
        clinic.lifecycle(s).complete(first, clinic.doctor)
    second = clinic.confirmed_paid(clinic.patient(2), "09:35-10:05")
    with clinic.session() as s:
        clinic.lifecycle(s).cancel(second, clinic.patient(2), "feeling better")
    clinic.book(clinic.patient(3), "10:10-10:40")

    with clinic.session() as s:
        o = clinic.payments(s).earnings_overview()
    assert (o.gross_cents, o.commission_cents, o.doctor_earnings_cents, o.refunds_cents) == (
        200_000,
        30_000,
        100_000,
        70_000,
    )
    assert o.gross_cents == o.commission_cents + o.doctor_earnings_cents + o.refunds_cents
    assert (o.paid_appointments, o.completed_appointments, o.patients, o.active_doctors) == (2, 1, 3, 1)

    with clinic.session() as s:
        rows, total = clinic.payments(s).platform_transactions(page=1, limit=10)
    assert total == 3
    assert {r.owner_user_id for r in rows} == {"admin-1"}
    assert sorted(r.amount_cents for r in rows) == [-10_000, 20_000, 20_000]

    with clinic.session() as s:
        rows, total = clinic.payments(s).platform_transactions(page=2, limit=2)
    assert (len(rows), total) == (1, 3)
