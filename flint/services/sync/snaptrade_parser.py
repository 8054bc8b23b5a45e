"""Parsing utilities for SnapTrade API responses."""

import json
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation


def to_decimal(value) -> Decimal | None:
    """Convert value to Decimal, handling None and amount objects."""
    if isinstance(value, dict):
        value = value.get("amount")
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_date(value) -> date | None:
    """Parse date string to date object."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    # Try ISO format
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except (ValueError, AttributeError):
        return None


def parse_datetime(value) -> datetime | None:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_symbol(data: dict) -> str:
    """
    Extract symbol string from various SnapTrade response formats.

    Handles:
    - Positions: data.symbol.symbol.symbol (deeply nested)
    - Orders: data.universal_symbol.symbol
    - Activities: data.symbol (string or dict with .symbol)
    """
    universal = data.get("universal_symbol")
    if isinstance(universal, dict) and universal.get("symbol"):
        return str(universal["symbol"])

    symbol = data.get("symbol", {})

    # If symbol is a string, return it directly
    if isinstance(symbol, str):
        return symbol

    # If symbol is a dict, look for nested symbol
    if isinstance(symbol, dict):
        inner = symbol.get("symbol", {})
        if isinstance(inner, dict):
            return str(inner.get("symbol") or "")
        if isinstance(inner, str):
            return inner
        return ""

    return ""


def extract_currency(data: dict, default: str = "USD") -> str:
    """Extract currency code from response, defaulting to USD."""
    currency_data = data.get("currency")
    if isinstance(currency_data, dict):
        return currency_data.get("code") or default
    if isinstance(currency_data, str) and currency_data:
        return currency_data
    return default


def mask_account_number(number: str | None) -> str | None:
    if not number:
        return None
    return f"****{str(number)[-4:]}"


def extract_authorization_id(data: dict) -> str | None:
    """Authorization id embedded in an account (string or nested object)."""
    auth = data.get("brokerage_authorization")
    if isinstance(auth, dict):
        return auth.get("id")
    return auth or None


def parse_account(data: dict) -> dict:
    """Account fields from a list_user_accounts entry."""
    meta = data.get("meta") or {}
    total = (data.get("balance") or {}).get("total") or {}
    holdings_sync = (data.get("sync_status") or {}).get("holdings") or {}
    return {
        "id": data["id"],
        "institution": data.get("institution_name"),
        "name": data.get("name") or "Unknown",
        "number_masked": mask_account_number(data.get("number")),
        "type": meta.get("brokerage_account_type") or meta.get("type") or data.get("raw_type"),
        "status": data.get("status") or "open",
        "currency": total.get("currency") or "USD",
        "total_balance": to_decimal(total.get("amount")),
        "holdings_last_sync_at": parse_datetime(holdings_sync.get("last_successful_sync")),
        "_raw_json": json.loads(json.dumps(data, default=str)),
    }


def parse_balance(entries, total_equity: Decimal | None = None) -> dict:
    """
    Balance fields from either balance response shape.

    get_user_account_balance returns a list of per-currency entries
    (`cash`, `buying_power`); holdings responses use amount objects
    (`cash.amount`, `total.amount`, `buying_power.amount`).
    """
    if isinstance(entries, list):
        entry = next(
            (e for e in entries if extract_currency(e, "") == "USD"),
            entries[0] if entries else {},
        )
    else:
        entry = entries or {}

    cash = entry.get("cash")
    currency = extract_currency(entry, "")
    if not currency and isinstance(cash, dict):
        currency = cash.get("currency") or ""
    total = to_decimal(entry.get("total"))
    return {
        "cash": to_decimal(cash),
        "total_equity": total if total is not None else total_equity,
        "buying_power": to_decimal(entry.get("buying_power")),
        "currency": currency or "USD",
    }


def parse_position(data: dict) -> dict:
    """Position fields; market value and P&L are derived when missing."""
    units = to_decimal(data.get("units"))
    if units is None:
        units = to_decimal(data.get("fractional_units")) or Decimal("0")
    price = to_decimal(data.get("price"))
    avg_cost = to_decimal(data.get("average_purchase_price"))

    market_value = to_decimal(data.get("market_value"))
    if market_value is None and price is not None:
        market_value = units * price
    pnl = to_decimal(data.get("open_pnl"))
    if pnl is None and price is not None and avg_cost is not None:
        pnl = (price - avg_cost) * units

    symbol_data = data.get("symbol")
    currency = extract_currency(data, "")
    if not currency and isinstance(symbol_data, dict):
        currency = extract_currency(symbol_data.get("symbol") or {}, "")

    return {
        "symbol": extract_symbol(data),
        "quantity": units,
        "avg_cost": avg_cost,
        "last_price": price,
        "market_value": market_value,
        "unrealized_pnl": pnl,
        "currency": currency or "USD",
    }


def extract_order_id(data: dict) -> str | None:
    return data.get("brokerage_order_id") or data.get("id")


def parse_order(data: dict) -> dict:
    status = str(data.get("status") or data.get("state") or "OPEN").upper()
    quantity = to_decimal(data.get("total_quantity"))
    if quantity is None:
        quantity = to_decimal(data.get("units")) or to_decimal(data.get("quantity")) or Decimal("0")
    placed_at = parse_datetime(data.get("time_placed") or data.get("created_date"))
    return {
        "id": extract_order_id(data),
        "symbol": extract_symbol(data),
        "side": str(data.get("action") or data.get("side") or "BUY").upper(),
        "type": data.get("order_type") or data.get("type") or "Market",
        "time_in_force": data.get("time_in_force"),
        "quantity": quantity,
        "price": to_decimal(data.get("limit_price")) or to_decimal(data.get("price")),
        "status": status,
        "filled_quantity": to_decimal(data.get("filled_quantity")),
        "avg_fill_price": to_decimal(data.get("execution_price")),
        "placed_at": placed_at or datetime.now(timezone.utc),
        "filled_at": parse_datetime(data.get("time_executed") or data.get("filled_date")),
        "cancelled_at": parse_datetime(data.get("cancelled_date"))
        or (parse_datetime(data.get("time_updated")) if status in ("CANCELED", "CANCELLED") else None),
    }


def parse_activity(data: dict) -> dict:
    activity_date = parse_date(data.get("trade_date")) or parse_date(data.get("settlement_date"))
    symbol = extract_symbol(data) or None
    if symbol is None and isinstance(data.get("option_symbol"), dict):
        symbol = data["option_symbol"].get("ticker")
    return {
        "id": data["id"],
        "date": activity_date or date.today(),
        "type": data.get("type") or "UNKNOWN",
        "description": (data.get("description") or "")[:500] or None,
        "amount": to_decimal(data.get("amount")) or Decimal("0"),
        "currency": extract_currency(data),
        "symbol": symbol,
    }
