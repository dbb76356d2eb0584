from decimal import Decimal

import pytest
from sqlalchemy import select

from settlement.errors import InsufficientStock, InvalidTransition, MissingVendorAssignment
from settlement.models import EntryStatus, EntryType, LedgerEntry, Order, Product, Vendor, VendorPayoutSlice, db
from settlement.services.order_splitter import CartLine, CreateOrderInput, OrderService


def _entries(vendor_id, entry_type=None):
    q = select(LedgerEntry).where(LedgerEntry.vendor_id == vendor_id)
    if entry_type is not None:
        q = q.where(LedgerEntry.entry_type == entry_type)
    return db.session.execute(q).scalars().all()


def test_create_order_snapshots_items_and_slices(vendors, make_product):
    v1, v2 = vendors
    p1 = make_product(v1, price="1000.00", stock=5)
    p2 = make_product(v2, price="500.00", stock=5)

    order = OrderService.create_order([CartLine(p1.id, 1), CartLine(p2.id, 1)], CreateOrderInput(customer_id=9))

    assert order.total_amount == Decimal("1500.00")
    assert order.payment_status == Order.PAY_PENDING
    assert order.number.startswith("MK-")

    items = {it.vendor_id: it for it in order.items}
    assert items[v1.id].vendor_earnings == Decimal("900.00")
    assert items[v1.id].commission_rate_bps == 1000
    assert items[v2.id].platform_commission == Decimal("75.00")

    slices = {s.vendor_id: s for s in order.payout_slices}
    assert slices[v2.id].amount == Decimal("425.00")
    assert slices[v2.id].status == VendorPayoutSlice.STATUS_HELD

    assert db.session.get(Product, p1.id).stock_qty == 4
    assert db.session.get(Vendor, v1.id).total_orders == 1
    # nothing is posted before the payment is confirmed
    assert _entries(v1.id) == []


def test_commission_rate_is_snapshotted(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="100.00")
    order = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput())

    v1.commission_rate_bps = 5000
    db.session.commit()

    assert order.items[0].commission_rate_bps == 1000
    assert order.items[0].vendor_earnings == Decimal("90.00")


def test_stock_is_all_or_nothing_with_every_shortfall_reported(vendors, make_product):
    v1, v2 = vendors
    ok = make_product(v1, price="10.00", stock=10, title="Plenty")
    short_a = make_product(v1, price="10.00", stock=1, title="Scarce")
    short_b = make_product(v2, price="10.00", stock=0, title="Gone")

    with pytest.raises(InsufficientStock) as exc:
        OrderService.create_order(
            [CartLine(ok.id, 2), CartLine(short_a.id, 2), CartLine(short_b.id, 1)], CreateOrderInput()
        )

    titles = sorted(s["title"] for s in exc.value.shortfalls)
    assert titles == ["Gone", "Scarce"]
    assert db.session.get(Product, ok.id).stock_qty == 10
    assert db.session.execute(select(Order)).scalars().all() == []


def test_variant_stock_is_used_for_sized_lines(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="40.00", stock=0, sizes={"M": 2, "L": 0})

    order = OrderService.create_order([CartLine(p.id, 2, "M")], CreateOrderInput())
    assert order.items[0].size == "M"
    db.session.refresh(p.variant_for("M"))
    assert p.variant_for("M").stock_qty == 0

    with pytest.raises(InsufficientStock):
        OrderService.create_order([CartLine(p.id, 1, "L")], CreateOrderInput())


def test_unlimited_products_skip_stock(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="5.00", stock=0, mode="unlimited")
    order = OrderService.create_order([CartLine(p.id, 50)], CreateOrderInput())
    assert order.total_amount == Decimal("250.00")


def test_product_without_vendor_is_rejected(make_product):
    p = make_product(None, price="5.00")
    with pytest.raises(MissingVendorAssignment):
        OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput())


def test_checkout_retry_with_same_key_returns_same_order(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="10.00", stock=3)

    first = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput(idempotency_key="cart-1"))
    again = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput(idempotency_key="cart-1"))

    assert again.id == first.id
    assert db.session.get(Product, p.id).stock_qty == 2


def test_confirm_payment_posts_pending_sale_once(vendors, make_product):
    v1, v2 = vendors
    p1 = make_product(v1, price="1000.00")
    p2 = make_product(v2, price="500.00")
    order = OrderService.create_order([CartLine(p1.id, 1), CartLine(p2.id, 1)], CreateOrderInput())

    OrderService.confirm_payment(order.id, "pay_1")
    OrderService.confirm_payment(order.id, "pay_1")

    sales = _entries(v1.id, EntryType.SALE)
    assert len(sales) == 1
    assert sales[0].amount == Decimal("900.00")
    assert sales[0].status == EntryStatus.PENDING
    assert sales[0].clear_at is not None
    assert _entries(v2.id, EntryType.SALE)[0].amount == Decimal("425.00")

    order = db.session.get(Order, order.id)
    assert order.is_paid
    assert order.slice_for(v1.id).status == VendorPayoutSlice.STATUS_PENDING


def test_confirm_payment_with_other_reference_is_refused(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="10.00")
    order = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput())
    OrderService.confirm_payment(order.id, "pay_1")

    with pytest.raises(InvalidTransition):
        OrderService.confirm_payment(order.id, "pay_2")


def test_prepaid_order_posts_sale_at_creation(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="200.00")
    OrderService.create_order(
        [CartLine(p.id, 1)], CreateOrderInput(payment_status="completed", payment_ref="pay_pre")
    )
    assert len(_entries(v1.id, EntryType.SALE)) == 1


def test_cod_sale_is_posted_on_delivery(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="100.00")
    order = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput(payment_method="cod"))

    with pytest.raises(InvalidTransition):
        OrderService.confirm_payment(order.id, "pay_x")
    assert _entries(v1.id) == []

    OrderService.mark_delivered(order.id)
    order = db.session.get(Order, order.id)
    assert order.order_status == Order.STATUS_DELIVERED
    assert order.is_paid
    sale = _entries(v1.id, EntryType.SALE)[0]
    assert sale.amount == Decimal("90.00")
    # cash already collected: clearance is immediate
    assert sale.clear_at <= sale.created_at


def test_unpaid_online_order_cannot_be_delivered(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="100.00")
    order = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput())
    with pytest.raises(InvalidTransition):
        OrderService.mark_delivered(order.id)


def test_full_refund_reverses_sale_and_commission(vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="100.00")
    order = OrderService.create_order([CartLine(p.id, 1)], CreateOrderInput())
    OrderService.confirm_payment(order.id, "pay_1")

    OrderService.refund_order(order.id, "rf_1")

    refunds = _entries(v1.id, EntryType.REFUND)
    assert [r.amount for r in refunds] == [Decimal("-90.00")]
    assert refunds[0].status == EntryStatus.PENDING
    memos = sorted(e.amount for e in _entries(v1.id, EntryType.COMMISSION))
    assert memos == [Decimal("-10.00"), Decimal("10.00")]
    assert db.session.get(Order, order.id).order_status == Order.STATUS_REFUNDED
