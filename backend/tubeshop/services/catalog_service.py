# Overview: Catalog browsing and admin product/image management.

"""
Catalog Service

Listing follows the same pagination contract used everywhere else:
page (1-indexed, default 1), per_page (default 20, max 100) and a
"pagination" block with has_next/has_prev.

IMAGE ORDERING:
A product's images are an ordered list keyed by `position`. Position 0 is
the primary image. Reordering rewrites every position in one transaction
so the list is never observed half-shuffled.
"""

from __future__ import annotations

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, ProductImage
from ..validation import ConflictError, ModelValidationPolicy


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku",
        "slug",
        "name",
        "description",
        "category",
        "brand",
        "price",
        "stock_quantity",
        "is_active",
        "allow_deposit",
        "deposit_type",
        "deposit_percentage",
        "deposit_amount",
        "deposit_due_hours",
    },
    required_on_create={"sku", "slug", "name", "price"},
)

PRODUCT_MUTABLE_FIELDS = PRODUCT_POLICY.writable_fields

SORT_OPTIONS = {
    "newest": (Product.created_at.desc(), Product.id.desc()),
    "price_asc": (Product.price.asc(), Product.id.asc()),
    "price_desc": (Product.price.desc(), Product.id.desc()),
    "name": (Product.name.asc(), Product.id.asc()),
}

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _paginate(query, page: int | None, per_page: int | None) -> tuple[list, dict]:
    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)
    per_page = max(per_page, 1)
    page = max(page or 1, 1)

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = query.offset((page - 1) * per_page).limit(per_page).all()
    return rows, {
        "page": page,
        "per_page": per_page,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def list_products(
    *,
    category: str | None = None,
    brand: str | None = None,
    min_price: int | None = None,
    max_price: int | None = None,
    in_stock: bool = False,
    q: str | None = None,
    sort: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
    include_inactive: bool = False,
) -> dict:
    """
    Storefront product listing.

    Inactive products are hidden unless include_inactive is set (admin view).
    Unknown sort keys are rejected rather than silently defaulted.
    """
    sort = sort or "newest"
    if sort not in SORT_OPTIONS:
        raise ValidationError(f"sort must be one of: {', '.join(sorted(SORT_OPTIONS))}")
    if min_price is not None and max_price is not None and min_price > max_price:
        raise ValidationError("min_price cannot exceed max_price")

    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if category:
        query = query.filter(Product.category == category)
    if brand:
        query = query.filter(Product.brand == brand)
    if min_price is not None:
        query = query.filter(Product.price >= min_price)
    if max_price is not None:
        query = query.filter(Product.price <= max_price)
    if in_stock:
        query = query.filter(Product.stock_quantity > 0)
    if q:
        pattern = f"%{q.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(Product.name).like(pattern),
                func.lower(Product.sku).like(pattern),
                func.lower(func.coalesce(Product.brand, "")).like(pattern),
            )
        )

    query = query.order_by(*SORT_OPTIONS[sort])
    products, pagination = _paginate(query, page, per_page)

    return {
        "items": [p.to_dict(include_images=False) for p in products],
        "count": len(products),
        "pagination": pagination,
    }


def get_product_by_slug(slug: str, *, include_inactive: bool = False) -> Product:
    query = db.session.query(Product).filter(Product.slug == slug)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    product = query.first()
    if product is None:
        raise NotFoundError("Product not found")
    return product


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def _ensure_unique(field: str, value: str, *, exclude_id: int | None = None) -> None:
    column = getattr(Product, field)
    query = db.session.query(Product.id).filter(column == value)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"{field.upper() if field == 'sku' else field.capitalize()} already exists.")


def _commit_product() -> None:
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race on the sku/slug unique constraint
        db.session.rollback()
        raise ConflictError("SKU or slug already exists.")


def create_product(*, patch: dict) -> dict:
    """
    Create product using a validated patch dict.

    Raises:
        ConflictError: If sku or slug is already taken
    """
    _ensure_unique("sku", patch["sku"])
    _ensure_unique("slug", patch["slug"])

    p = Product()
    apply_product_patch(p, patch)
    db.session.add(p)
    _commit_product()
    return p.to_dict()


def update_product(*, product_id: int, patch: dict) -> dict:
    """
    Apply a validated partial patch.

    Raises:
        NotFoundError: If the product does not exist
        ConflictError: If a changed sku or slug is already taken
    """
    p = get_product(product_id)

    if "sku" in patch and patch["sku"] != p.sku:
        _ensure_unique("sku", patch["sku"], exclude_id=p.id)
    if "slug" in patch and patch["slug"] != p.slug:
        _ensure_unique("slug", patch["slug"], exclude_id=p.id)

    apply_product_patch(p, patch)
    _commit_product()
    return p.to_dict()


def current_rule_values(p: Product) -> dict:
    """Persisted values that product business rules need for patch semantics."""
    return {
        "price": p.price,
        "stock_quantity": p.stock_quantity,
        "allow_deposit": p.allow_deposit,
        "deposit_type": p.deposit_type,
        "deposit_percentage": p.deposit_percentage,
        "deposit_amount": p.deposit_amount,
        "deposit_due_hours": p.deposit_due_hours,
    }


# =============================================================================
# IMAGES
# =============================================================================

def add_product_image(product_id: int, *, url: str, alt_text: str | None = None) -> dict:
    """Append an image at the end of the product's list."""
    product = get_product(product_id)
    if not url or not url.strip():
        raise ValidationError("url is required")

    next_position = (
        db.session.query(func.coalesce(func.max(ProductImage.position), -1))
        .filter(ProductImage.product_id == product.id)
        .scalar()
        + 1
    )
    image = ProductImage(
        product_id=product.id,
        url=url.strip(),
        alt_text=alt_text,
        position=next_position,
    )
    db.session.add(image)
    db.session.commit()
    return image.to_dict()


def delete_product_image(product_id: int, image_id: int) -> None:
    """
    Remove one image and close the gap in positions.

    Deleting the primary image promotes the next one to position 0.
    """
    image = (
        db.session.query(ProductImage)
        .filter(ProductImage.id == image_id, ProductImage.product_id == product_id)
        .first()
    )
    if image is None:
        raise NotFoundError("Image not found")

    removed_position = image.position
    db.session.delete(image)
    db.session.execute(
        update(ProductImage)
        .where(
            ProductImage.product_id == product_id,
            ProductImage.position > removed_position,
        )
        .values(position=ProductImage.position - 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def reorder_product_images(product_id: int, image_ids: list) -> list[dict]:
    """
    Replace the image order with `image_ids` (first id becomes primary).

    The submitted list must contain exactly the product's image ids, each
    once. All positions are written by a single UPDATE ... CASE statement.
    """
    product = get_product(product_id)

    if not isinstance(image_ids, list) or not all(
        isinstance(i, int) and not isinstance(i, bool) for i in image_ids
    ):
        raise ValidationError("imageIds must be a list of integers")
    if len(set(image_ids)) != len(image_ids):
        raise ValidationError("imageIds contains duplicates")

    existing_ids = {
        row.id
        for row in db.session.query(ProductImage.id).filter(ProductImage.product_id == product.id)
    }
    if set(image_ids) != existing_ids:
        raise ValidationError("imageIds must list exactly the product's images")

    if image_ids:
        positions = {image_id: index for index, image_id in enumerate(image_ids)}
        db.session.execute(
            update(ProductImage)
            .where(ProductImage.product_id == product.id)
            .values(position=case(positions, value=ProductImage.id))
            .execution_options(synchronize_session=False)
        )
    db.session.commit()

    db.session.expire(product)
    return [img.to_dict() for img in product.images]
