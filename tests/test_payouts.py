import threading
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from settlement.errors import (
    BelowMinimumThreshold,
    ConcurrencyError,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    PayoutInProgress,
    ValidationError,
    WalletClosed,
    WalletFrozen,
)
from settlement.models import (
    EntryStatus,
    EntryType,
    LedgerEntry,
    PayoutStatus,
    ReferenceType,
    Vendor,
    VendorPayoutSlice,
    VendorWallet,
    db,
)
from settlement.services import ledger_service, payout_service, wallet_service
from settlement.services.notifications import get_bus
from settlement.services.order_splitter import CartLine, CreateOrderInput, OrderService
from settlement.services.wallet_service import compute_balances, get_wallet_row


@pytest.fixture()
def funded(vendors):
    """V1 with 500.00 withdrawable (minimum withdrawal 100.00)."""
    v1, _ = vendors
    ledger_service.record_adjustment(v1.id, "500.00", "opening balance")
    return v1


@pytest.fixture()
def events(app):
    seen = []
    get_bus().subscribe("*", lambda msg: seen.append(msg.event))
    return seen


def _entries(vendor_id, entry_type):
    return db.session.execute(
        select(LedgerEntry).where(LedgerEntry.vendor_id == vendor_id, LedgerEntry.entry_type == entry_type)
    ).scalars().all()


def test_request_checks_balance_then_reserves(funded):
    with pytest.raises(InsufficientBalance):
        payout_service.request_payout(funded.id, "600.00")
    with pytest.raises(BelowMinimumThreshold):
        payout_service.request_payout(funded.id, "50.00")

    payout = payout_service.request_payout(funded.id, "300.00")

    assert payout.status == PayoutStatus.REQUESTED
    reserve = _entries(funded.id, EntryType.RESERVE)
    assert len(reserve) == 1
    assert reserve[0].amount == Decimal("-300.00")
    assert reserve[0].status == EntryStatus.PENDING
    assert reserve[0].reference_type == ReferenceType.PAYOUT

    bal = compute_balances(funded.id)
    assert bal.withdrawable == Decimal("200.00")
    assert bal.in_flight_payouts == Decimal("300.00")
    assert bal.frozen == Decimal("0.00")
    assert bal.total == Decimal("500.00")
    assert wallet_service.get_wallet(funded.id)["withdrawable"] == "200.00"


def test_complete_posts_payout_and_releases_reserve(funded, events):
    payout = payout_service.request_payout(funded.id, "300.00")
    payout_service.approve(payout.public_id, actor="admin")
    payout_service.mark_processing(payout.public_id, actor="admin")

    done = payout_service.complete(payout.public_id, "UTR123", actor="admin")

    assert done.status == PayoutStatus.COMPLETED
    assert done.external_transaction_id == "UTR123"
    assert done.processed_date is not None

    paid = _entries(funded.id, EntryType.PAYOUT)
    assert [(p.amount, p.status) for p in paid] == [(Decimal("-300.00"), EntryStatus.CLEARED)]
    assert _entries(funded.id, EntryType.RESERVE)[0].status == EntryStatus.CLEARED

    bal = compute_balances(funded.id)
    assert bal.total == Decimal("200.00")
    assert bal.frozen == Decimal("0.00")
    assert bal.withdrawable == Decimal("200.00")

    assert events == ["payout.requested", "payout.approved", "payout.processing", "payout.completed"]


def test_reject_voids_reserve_and_restores_balance(funded):
    payout = payout_service.request_payout(funded.id, "300.00")

    failed = payout_service.reject(payout.id, "invalid bank details", actor="admin")

    assert failed.status == PayoutStatus.FAILED
    assert failed.failure_reason == "invalid bank details"
    assert _entries(funded.id, EntryType.RESERVE)[0].status == EntryStatus.VOIDED
    assert compute_balances(funded.id).withdrawable == Decimal("500.00")


def test_reject_requires_reason(funded):
    payout = payout_service.request_payout(funded.id, "300.00")
    with pytest.raises(ValidationError):
        payout_service.reject(payout.id, "", actor="admin")


def test_complete_requires_transaction_reference(funded):
    payout = payout_service.request_payout(funded.id, "300.00")
    payout_service.approve(payout.id)
    with pytest.raises(ValidationError):
        payout_service.complete(payout.id, "  ")


def test_invalid_transitions_are_refused(funded):
    payout = payout_service.request_payout(funded.id, "300.00")

    with pytest.raises(InvalidTransition):
        payout_service.complete(payout.id, "UTR1")
    with pytest.raises(InvalidTransition):
        payout_service.mark_processing(payout.id)

    payout_service.approve(payout.id)
    payout_service.complete(payout.id, "UTR1")

    with pytest.raises(InvalidTransition):
        payout_service.cancel(payout.id)
    with pytest.raises(InvalidTransition):
        payout_service.reject(payout.id, "too late")


def test_repeating_an_applied_action_is_a_no_op(funded):
    payout = payout_service.request_payout(funded.id, "300.00")
    payout_service.approve(payout.id)
    payout_service.approve(payout.id)
    payout_service.complete(payout.id, "UTR9")
    payout_service.complete(payout.id, "UTR9")

    assert len(_entries(funded.id, EntryType.PAYOUT)) == 1
    assert compute_balances(funded.id).withdrawable == Decimal("200.00")


def test_vendor_cancel_returns_funds(funded, make_vendor):
    payout = payout_service.request_payout(funded.id, "150.00")
    other = make_vendor("Other")

    with pytest.raises(NotFound):
        payout_service.cancel(payout.public_id, vendor_id=other.id)

    cancelled = payout_service.cancel(payout.public_id, vendor_id=funded.id, actor="vendor")
    assert cancelled.status == PayoutStatus.CANCELLED
    assert compute_balances(funded.id).withdrawable == Decimal("500.00")


def test_same_idempotency_key_returns_same_payout(funded):
    a = payout_service.request_payout(funded.id, "200.00", idempotency_key="po-key-1")
    b = payout_service.request_payout(funded.id, "200.00", idempotency_key="po-key-1")

    assert a.id == b.id
    assert len(_entries(funded.id, EntryType.RESERVE)) == 1
    assert compute_balances(funded.id).withdrawable == Decimal("300.00")


def test_frozen_and_closed_wallets_cannot_request(funded):
    wallet_service.freeze_wallet(funded.id, reason="review")
    with pytest.raises(WalletFrozen):
        payout_service.request_payout(funded.id, "200.00")

    wallet_service.close_wallet(funded.id)
    with pytest.raises(WalletClosed):
        payout_service.request_payout(funded.id, "200.00")


def test_one_payout_in_flight_when_configured(app, funded):
    app.config["PAYOUT_ONE_IN_FLIGHT"] = True
    payout_service.request_payout(funded.id, "100.00")
    with pytest.raises(PayoutInProgress):
        payout_service.request_payout(funded.id, "120.00")


def test_stale_wallet_version_is_retried(funded, monkeypatch):
    real = payout_service.compute_balances
    calls = {"n": 0}

    def racing(vendor_id):
        calls["n"] += 1
        if calls["n"] == 1:
            # a concurrent request bumps the wallet between read and reserve
            db.session.execute(
                update(VendorWallet).where(VendorWallet.vendor_id == vendor_id).values(version=VendorWallet.version + 1)
            )
        return real(vendor_id)

    monkeypatch.setattr(payout_service, "compute_balances", racing)

    payout = payout_service.request_payout(funded.id, "300.00")

    assert calls["n"] == 2
    assert payout.status == PayoutStatus.REQUESTED
    assert len(_entries(funded.id, EntryType.RESERVE)) == 1


def test_lost_race_gives_up_after_max_retries(app, funded, monkeypatch):
    app.config["PAYOUT_MAX_RETRIES"] = 1
    real = payout_service.compute_balances

    def racing(vendor_id):
        db.session.execute(
            update(VendorWallet).where(VendorWallet.vendor_id == vendor_id).values(version=VendorWallet.version + 1)
        )
        return real(vendor_id)

    monkeypatch.setattr(payout_service, "compute_balances", racing)

    with pytest.raises(ConcurrencyError):
        payout_service.request_payout(funded.id, "300.00")
    assert _entries(funded.id, EntryType.RESERVE) == []


def test_completion_releases_order_slices(funded, make_product):
    product = make_product(funded, price="200.00")
    order = OrderService.create_order([CartLine(product.id, 1)], CreateOrderInput())
    OrderService.confirm_payment(order.id, "pay_s")

    payout = payout_service.request_payout(funded.id, "300.00", order_ids=[order.id, order.id])
    assert payout.order_ids == [order.id]

    payout_service.approve(payout.id)
    payout_service.complete(payout.id, "UTR55")

    slice_ = db.session.execute(
        select(VendorPayoutSlice).where(VendorPayoutSlice.order_id == order.id)
    ).scalar_one()
    assert slice_.status == VendorPayoutSlice.STATUS_RELEASED


def test_admin_action_dispatch(funded):
    payout = payout_service.request_payout(funded.id, "300.00")

    payout_service.admin_action(payout.public_id, "approve", {"notes": "ok"}, actor="admin")
    payout_service.admin_action(payout.public_id, "process", {}, actor="admin")
    done = payout_service.admin_action(payout.public_id, "complete", {"transaction_id": "UTR77"}, actor="admin")
    assert done.status == PayoutStatus.COMPLETED
    assert done.notes == "ok"

    with pytest.raises(ValidationError):
        payout_service.admin_action(payout.public_id, "explode", {})


def test_rejected_request_can_be_made_again(funded):
    first = payout_service.request_payout(funded.id, "300.00")
    payout_service.reject(first.id, "invalid bank details", actor="admin")

    second = payout_service.request_payout(funded.id, "300.00")

    assert second.id != first.id
    assert second.status == PayoutStatus.REQUESTED
    assert compute_balances(funded.id).withdrawable == Decimal("200.00")


def test_requests_without_a_key_are_never_merged(funded):
    a = payout_service.request_payout(funded.id, "200.00")
    b = payout_service.request_payout(funded.id, "200.00")

    assert a.id != b.id
    assert len(_entries(funded.id, EntryType.RESERVE)) == 2
    assert compute_balances(funded.id).withdrawable == Decimal("100.00")


def test_dispute_hold_landing_mid_request_is_seen(funded, monkeypatch):
    real = payout_service.compute_balances
    calls = {"n": 0}

    def racing(vendor_id):
        calls["n"] += 1
        stale = real(vendor_id)
        if calls["n"] == 1:
            # the hold commits after the balance was read
            ledger_service.hold_funds(vendor_id, "400.00", "dp_race")
        return stale

    monkeypatch.setattr(payout_service, "compute_balances", racing)

    with pytest.raises(InsufficientBalance):
        payout_service.request_payout(funded.id, "300.00")

    assert calls["n"] == 2
    reserves = _entries(funded.id, EntryType.RESERVE)
    assert [r.reference_type for r in reserves] == [ReferenceType.DISPUTE]
    bal = compute_balances(funded.id)
    assert bal.withdrawable == Decimal("100.00")
    assert bal.frozen == Decimal("400.00")


def test_debit_adjustment_bumps_wallet_version(funded):
    before = get_wallet_row(funded.id).version
    ledger_service.record_adjustment(funded.id, "-50.00", "fee")
    ledger_service.record_adjustment(funded.id, "10.00", "goodwill")

    db.session.expire_all()
    assert get_wallet_row(funded.id).version == before + 1


def test_two_concurrent_requests_cannot_both_reserve(file_app):
    vendor = Vendor(name="Racer", commission_rate_bps=1000)
    db.session.add(vendor)
    db.session.commit()
    vid = vendor.id
    ledger_service.record_adjustment(vid, "500.00", "opening balance")
    db.session.close()

    barrier = threading.Barrier(2)
    results = []

    def worker():
        with file_app.app_context():
            barrier.wait()
            try:
                results.append(payout_service.request_payout(vid, "400.00").public_id)
            except (InsufficientBalance, ConcurrencyError, OperationalError) as e:
                results.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert len(results) == 2
    assert len([r for r in results if isinstance(r, str)]) == 1
    bal = compute_balances(vid)
    assert bal.withdrawable == Decimal("100.00")
    assert bal.in_flight_payouts == Decimal("400.00")
