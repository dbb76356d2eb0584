from __future__ import annotations

import os
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool

from settlement import create_app
from settlement.extensions import cache
from settlement.models import Product, ProductVariant, Vendor, db


@pytest.fixture(scope="session")
def _env():
    os.environ.setdefault("ENV", "testing")
    os.environ.setdefault("SECRET_KEY", "dev-secret")
    yield


def _overrides(**extra):
    cfg = {
        "TESTING": True,
        "CACHE_TYPE": "SimpleCache",
        "NOTIFICATIONS_SYNC": True,
        "ADMIN_API_TOKEN": "",
        "CRON_SECRET": "",
        "DEFAULT_MIN_WITHDRAWAL": Decimal("100.00"),
        "PAYOUT_ONE_IN_FLIGHT": False,
        "PROPAGATE_EXCEPTIONS": True,
    }
    cfg.update(extra)
    return cfg


@pytest.fixture()
def app(_env):
    # sqlite:// + StaticPool => one live connection shared by every session
    app = create_app(
        _overrides(
            SQLALCHEMY_DATABASE_URI="sqlite://",
            SQLALCHEMY_ENGINE_OPTIONS={
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            },
        ),
        env_name="testing",
    )

    with app.app_context():
        db.drop_all()
        db.create_all()
        cache.clear()

        yield app

        db.session.rollback()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(_env, tmp_path):
    """Real SQLite file: one connection per thread, so writers actually contend."""
    app = create_app(
        _overrides(
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'settlement.db'}",
            SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"check_same_thread": False, "timeout": 10}},
        ),
        env_name="testing",
    )

    with app.app_context():
        db.create_all()
        cache.clear()

        yield app

        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_vendor(app):
    def _make(name: str = "Vendor", bps: int = 1000, email: str | None = None) -> Vendor:
        v = Vendor(name=name, email=email, commission_rate_bps=bps)
        db.session.add(v)
        db.session.commit()
        return v

    return _make


@pytest.fixture()
def make_product(app):
    def _make(vendor, price="100.00", stock=10, title="Product", mode="finite", sizes=None) -> Product:
        p = Product(
            title=title,
            vendor_id=vendor.id if vendor is not None else None,
            price=Decimal(price),
            stock_mode=mode,
            stock_qty=stock,
        )
        for size, qty in (sizes or {}).items():
            p.variants.append(ProductVariant(size=size, stock_qty=qty))
        db.session.add(p)
        db.session.commit()
        return p

    return _make


@pytest.fixture()
def vendors(make_vendor):
    """V1 at 10% and V2 at 15% (bps 1000 / 1500)."""
    return make_vendor("V1", 1000, "v1@example.com"), make_vendor("V2", 1500, "v2@example.com")
