"""
extractor/pricing.py

Price text coercion and normalization.

Display text is always kept as extracted; normalization adds numeric
companions alongside it:
    "£1,299.99"        -> price_value 1299.99, price_currency "£"
    "From £4.50"       -> price_value 4.5, price_is_range True
    "£3.00 - £5.00"    -> price_value 3.0, price_is_range True
"""

import re
from typing import Any, Dict, Optional

_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?|\.\d+")
_RANGE_HINT = re.compile(r"^\s*(from|starting at|as low as)\b", re.IGNORECASE)
_CURRENCY_SYMBOLS = {"£": "GBP", "$": "USD", "€": "EUR"}
_ISO_CURRENCY = re.compile(r"\b(GBP|USD|EUR)\b", re.IGNORECASE)


def to_number(text: Any) -> Optional[float]:
    """First number in the text, thousands separators removed."""
    if isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)
    if not isinstance(text, str):
        return None
    match = _NUMBER.search(text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def format_number(value: float) -> str:
    """12.0 -> "12", 12.50 -> "12.5"."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def detect_currency(text: str) -> Optional[str]:
    for symbol in _CURRENCY_SYMBOLS:
        if symbol in text:
            return symbol
    match = _ISO_CURRENCY.search(text)
    return match.group(1).upper() if match else None


def is_price_range(text: str) -> bool:
    if _RANGE_HINT.search(text):
        return True
    return len(_NUMBER.findall(text)) >= 2 and bool(re.search(r"\d\s*(-|–|to)\s*\D?\d", text))


def normalize_price_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of the item with price_value/price_currency/price_is_range added."""
    price = item.get("price")
    if price is None or (isinstance(price, str) and not price.strip()):
        result = dict(item)
        result["price"] = ""
        return result

    text = price if isinstance(price, str) else format_number(float(price))
    result = dict(item)
    result["price"] = text.strip()
    value = to_number(text)
    if value is not None:
        result["price_value"] = round(value, 2)
    currency = detect_currency(text)
    if currency:
        result["price_currency"] = currency
    if is_price_range(text):
        result["price_is_range"] = True
    return result


def prices_equal(old: Any, new: Any) -> bool:
    """Compare prices numerically to 2dp when both parse, else as trimmed strings."""
    old_value, new_value = to_number(old), to_number(new)
    if old_value is not None and new_value is not None:
        return round(old_value, 2) == round(new_value, 2)
    return str(old if old is not None else "").strip() == str(new if new is not None else "").strip()
