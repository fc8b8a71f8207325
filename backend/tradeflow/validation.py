from __future__ import annotations

from typing import Any

from flask import request

from .errors import ValidationError


# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


def json_body() -> dict:
    """Request JSON as a dict; a missing body is empty, any other shape is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def coerce_int(key: str, value: Any) -> int:
    """
    Strict integer coercion for JSON payloads.

    Accepts ints and plain digit strings; rejects bools, floats, decimals
    and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer") from None
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def get_int(
    data: dict,
    key: str,
    *,
    required: bool = True,
    minimum: int | None = None,
    maximum: int | None = None,
    default: int | None = None,
) -> int | None:
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return default
    result = coerce_int(key, value)
    if minimum is not None and result < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{key} must be <= {maximum}")
    return result


def get_cents(data: dict, key: str, *, required: bool = True, allow_zero: bool = False, signed: bool = False) -> int | None:
    value = get_int(data, key, required=required)
    if value is None:
        return None
    if abs(value) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{key} exceeds maximum of {MAX_AMOUNT_CENTS}")
    if not signed and value < 0:
        raise ValidationError(f"{key} must be non-negative")
    if not allow_zero and value == 0:
        raise ValidationError(f"{key} must be non-zero")
    return value


def get_str(data: dict, key: str, *, required: bool = False, max_length: int = 255) -> str | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} must be at most {max_length} characters")
    return value


def get_bool(data: dict, key: str, *, default: bool = False) -> bool:
    value = data.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
        return value.strip().lower() in {"true", "1"}
    raise ValidationError(f"{key} must be a boolean")


def parse_items(data: dict, *, with_price: bool = True) -> list[dict]:
    """Normalize an `items` list into [{"product_id", "quantity"[, "unit_price_cents"]}]."""
    raw_items = data.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        item = {
            "product_id": get_int(raw, "product_id", minimum=1),
            "quantity": get_int(raw, "quantity", minimum=1),
        }
        if with_price:
            price = get_int(raw, "unit_price_cents", required=False, minimum=0, maximum=MAX_AMOUNT_CENTS)
            if price is not None:
                item["unit_price_cents"] = price
        items.append(item)
    return items


def parse_quantity_map(value: Any, key: str = "delivered_quantities") -> dict[int, int] | None:
    """{"<product_id>": qty} -> {product_id: qty}; None passes through."""
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{key} must be an object of product_id -> quantity")
    return {coerce_int(f"{key} key", k): coerce_int(f"{key}[{k}]", v) for k, v in value.items()}
