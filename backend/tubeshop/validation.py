from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import OrderError, ValidationError


# Maximum price: 9,999,999,999 VND
MAX_PRICE_VND = 9_999_999_999


class ConflictError(OrderError):
    """409-level business rule conflict (e.g., duplicate SKU or slug)."""
    status_code = 409


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict, *, current: dict | None = None) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.

    `current` holds the persisted values for patch semantics so deposit
    settings are checked as a whole.
    """
    merged = dict(current or {})
    merged.update(patch)

    price = merged.get("price")
    if price is not None:
        if price < 0:
            raise ValidationError("price must be >= 0")
        if price > MAX_PRICE_VND:
            raise ValidationError(f"price cannot exceed {MAX_PRICE_VND:,} VND")

    stock = merged.get("stock_quantity")
    if stock is not None and stock < 0:
        raise ValidationError("stock_quantity must be >= 0")

    if merged.get("allow_deposit"):
        deposit_type = merged.get("deposit_type")
        if deposit_type == "percent":
            pct = merged.get("deposit_percentage")
            if pct is None or not (0 < pct <= 100):
                raise ValidationError("deposit_percentage must be between 1 and 100")
        elif deposit_type == "fixed":
            amount = merged.get("deposit_amount")
            if amount is None or amount <= 0:
                raise ValidationError("deposit_amount must be > 0")
            if price is not None and amount > price:
                raise ValidationError("deposit_amount cannot exceed price")
        else:
            raise ValidationError("deposit_type must be 'percent' or 'fixed' when deposits are allowed")

    hours = merged.get("deposit_due_hours")
    if hours is not None and hours <= 0:
        raise ValidationError("deposit_due_hours must be > 0")


def require_text(data: dict, key: str, message: str, *, max_length: int | None = None) -> str:
    """Return a stripped, non-empty string field or raise ValidationError."""
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message)
    value = value.strip()
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return value


def optional_text(data: dict, key: str, *, max_length: int | None = None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if not value:
        return None
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return value


def parse_positive_int(value: Any, field: str) -> int:
    """Strict positive integer parsing (rejects bools, floats, numeric strings with decimals)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a positive integer")
    if value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value
