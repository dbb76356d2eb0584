from __future__ import annotations

from settlement.models import db
from settlement.utils import utcnow


class Product(db.Model):
    """
    Catalog slice the splitter needs:
    - vendor_id: owning vendor (nullable: legacy rows without assignment are rejected at checkout)
    - stock_mode: finite | unlimited
    - variants: size-level stock; when a cart line names a size, the variant's stock is used
    """
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(180), nullable=False)

    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True, index=True)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    stock_mode = db.Column(db.String(20), nullable=False, default="finite")  # finite/unlimited
    stock_qty = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    vendor = db.relationship("Vendor", lazy="joined")
    variants = db.relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan", lazy="select")

    __table_args__ = (
        db.CheckConstraint("stock_qty >= 0", name="ck_product_stock_nonneg"),
    )

    def variant_for(self, size: str):
        for v in self.variants or []:
            if v.size == size:
                return v
        return None

    def __repr__(self) -> str:
        return f"<Product id={self.id} title={self.title}>"


class ProductVariant(db.Model):
    __tablename__ = "product_variants"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)

    size = db.Column(db.String(40), nullable=False)
    stock_qty = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product", back_populates="variants")

    __table_args__ = (
        db.UniqueConstraint("product_id", "size", name="uq_variant_product_size"),
        db.CheckConstraint("stock_qty >= 0", name="ck_variant_stock_nonneg"),
    )

    def __repr__(self) -> str:
        return f"<ProductVariant product_id={self.product_id} size={self.size}>"
