from decimal import Decimal

import pytest

from settlement.errors import MissingVendorAssignment, ValidationError
from settlement.services.order_splitter import SplitLine, split_item, split_order


def test_two_vendor_split_matches_commission_rates():
    split = split_order([
        {"vendor_id": 1, "quantity": 1, "unit_price": "1000.00", "commission_rate_bps": 1000},
        {"vendor_id": 2, "quantity": 1, "unit_price": "500.00", "commission_rate_bps": 1500},
    ])

    assert split[1].amount == Decimal("900.00")
    assert split[2].amount == Decimal("425.00")
    assert split[1].commission + split[2].commission == Decimal("175.00")
    assert split[1].gross + split[2].gross == Decimal("1500.00")


def test_earnings_plus_commission_equals_item_total():
    for total, bps in [("0.05", 1000), ("19.99", 1250), ("333.33", 777), ("1.00", 10000), ("7.10", 0)]:
        commission, earnings = split_item(Decimal(total), bps)
        assert commission + earnings == Decimal(total)
        assert commission >= 0 and earnings >= 0


def test_commission_rounds_half_up():
    # 0.05 * 10% = 0.005 -> 0.01
    commission, earnings = split_item(Decimal("0.05"), 1000)
    assert commission == Decimal("0.01")
    assert earnings == Decimal("0.04")


def test_lines_of_one_vendor_are_grouped():
    split = split_order([
        SplitLine(vendor=7, quantity=2, unit_price=Decimal("50.00"), commission_rate_bps=1000),
        SplitLine(vendor=7, quantity=1, unit_price=Decimal("100.00"), commission_rate_bps=2000),
    ])

    assert list(split) == [7]
    assert split[7].gross == Decimal("200.00")
    assert split[7].commission == Decimal("30.00")
    assert split[7].amount == Decimal("170.00")
    assert len(split[7].items) == 2


@pytest.mark.parametrize("vendor", [5, "5", {"id": 5}, {"_id": "5"}, {"vendor_id": 5}])
def test_vendor_reference_shapes_are_normalized(vendor):
    split = split_order([{"vendor": vendor, "qty": 1, "price": "10.00", "commission_rate_bps": 1000}])
    assert list(split) == [5]


def test_line_without_vendor_is_rejected():
    with pytest.raises(MissingVendorAssignment):
        split_order([{"vendor": None, "quantity": 1, "unit_price": "10.00", "commission_rate_bps": 1000,
                      "product_id": 3}])


def test_bad_quantity_and_rate_are_rejected():
    with pytest.raises(ValidationError):
        split_order([{"vendor_id": 1, "quantity": 0, "unit_price": "10.00", "commission_rate_bps": 1000}])
    with pytest.raises(ValidationError):
        split_order([{"vendor_id": 1, "quantity": 1, "unit_price": "10.00", "commission_rate_bps": 10001}])
    with pytest.raises(ValidationError):
        split_order([{"vendor_id": 1, "quantity": 1, "unit_price": "-1.00", "commission_rate_bps": 100}])
