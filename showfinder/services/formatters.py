from decimal import Decimal, InvalidOperation
from typing import Any


def format_entry_fee(value: Any) -> str:
    """Render an entry fee for display; zero or missing fees read as free."""
    if value is None or isinstance(value, bool):
        return "Free Entry"
    text = str(value).strip().lstrip("$").strip()
    if not text:
        return "Free Entry"
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return f"Entry: {value}"
    if amount == 0:
        return "Free Entry"
    if isinstance(value, float) and amount == amount.to_integral_value():
        text = str(int(amount))
    return f"Entry: ${text}"
