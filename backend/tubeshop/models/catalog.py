from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class Product(db.Model):
    """
    Catalog product (one amplifier, kit, or accessory).

    Prices are whole VND (no minor unit). `stock_quantity` is the sellable
    quantity; checkout decrements it and cancellation/expiry restores it.

    DEPOSIT SETTINGS:
    - allow_deposit: product may be bought as a deposit reservation
    - deposit_type: "percent" (deposit_percentage of price) or "fixed" (deposit_amount)
    - deposit_due_hours: how long the reservation holds stock before expiring
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_category", "is_active", "category"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    slug = db.Column(db.String(160), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(64), nullable=True, index=True)
    brand = db.Column(db.String(64), nullable=True, index=True)

    price = db.Column(db.BigInteger, nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    allow_deposit = db.Column(db.Boolean, nullable=False, default=False)
    deposit_type = db.Column(db.String(16), nullable=True)
    deposit_percentage = db.Column(db.Integer, nullable=True)
    deposit_amount = db.Column(db.BigInteger, nullable=True)
    deposit_due_hours = db.Column(db.Integer, nullable=False, default=24)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    images = db.relationship(
        "ProductImage",
        back_populates="product",
        order_by="ProductImage.position",
        cascade="all, delete-orphan",
        lazy=True,
    )

    @property
    def primary_image(self) -> "ProductImage | None":
        return self.images[0] if self.images else None

    def to_dict(self, *, include_images: bool = True) -> dict:
        data = {
            "id": self.id,
            "sku": self.sku,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "brand": self.brand,
            "price": self.price,
            "stock_quantity": self.stock_quantity,
            "in_stock": self.stock_quantity > 0,
            "is_active": self.is_active,
            "allow_deposit": self.allow_deposit,
            "deposit_type": self.deposit_type,
            "deposit_percentage": self.deposit_percentage,
            "deposit_amount": self.deposit_amount,
            "deposit_due_hours": self.deposit_due_hours,
            "primary_image_url": self.primary_image.url if self.primary_image else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_images:
            data["images"] = [img.to_dict() for img in self.images]
        return data


class ProductImage(db.Model):
    """
    Ordered image reference for a product.

    The image list is ordered by `position`; position 0 is the primary image.
    There is no per-row primary flag.
    """
    __tablename__ = "product_images"
    __table_args__ = (
        db.Index("ix_product_images_product_position", "product_id", "position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    url = db.Column(db.String(512), nullable=False)
    alt_text = db.Column(db.String(255), nullable=True)
    position = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", back_populates="images")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "url": self.url,
            "alt_text": self.alt_text,
            "position": self.position,
            "is_primary": self.position == 0,
        }
