"""Mapping of Teller accounts, balances and transactions to mirror rows."""

from datetime import date
from decimal import Decimal

from flint.services.sync.snaptrade_parser import parse_date, to_decimal


def is_credit_account(account: dict) -> bool:
    return account.get("type") == "credit" or account.get("subtype") == "credit_card"


def map_teller_account(account: dict, balance: dict | None) -> dict:
    """
    Map a Teller account and its balance.

    Teller reports a credit card's ledger as the positive amount owed; it is
    stored as `owed` and the display balance is negated so debt reduces net
    worth. Depository accounts use available, falling back to ledger.
    """
    balance = balance or {}
    ledger = to_decimal(balance.get("ledger")) or Decimal("0")
    available = to_decimal(balance.get("available")) or Decimal("0")
    last_four = account.get("last_four")

    mapped = {
        "id": account["id"],
        "institution": (account.get("institution") or {}).get("name") or "Unknown",
        "name": account.get("name") or "Bank account",
        "number_masked": f"****{last_four}" if last_four else None,
        "status": account.get("status") or "open",
        "currency": account.get("currency") or "USD",
        "ledger": ledger,
        "available": available,
    }
    if is_credit_account(account):
        mapped.update(
            type=account.get("subtype") or "credit_card",
            owed=ledger,
            available_credit=available,
            cash=None,
            total_balance=-ledger,
        )
    else:
        cash = available or ledger
        mapped.update(
            type=account.get("subtype") or account.get("type") or "depository",
            owed=None,
            available_credit=None,
            cash=cash,
            total_balance=cash,
        )
    return mapped


def account_fields(mapped: dict) -> dict:
    """The subset of a mapped Teller account stored on Account."""
    keys = ("id", "institution", "name", "number_masked", "type", "status", "currency", "total_balance")
    return {key: mapped[key] for key in keys}


def balance_fields(mapped: dict) -> dict:
    return {
        "cash": mapped["cash"],
        "total_equity": mapped["total_balance"],
        "buying_power": mapped["available_credit"] if mapped["owed"] is not None else mapped["available"],
        "currency": mapped["currency"],
    }


def parse_teller_transaction(txn: dict, currency: str = "USD") -> dict:
    details = txn.get("details") or {}
    counterparty = (details.get("counterparty") or {}).get("name")
    description = txn.get("description") or counterparty or ""
    return {
        "id": txn["id"],
        "date": parse_date(txn.get("date")) or date.today(),
        "type": txn.get("type") or details.get("category") or "transaction",
        "description": description[:500] or None,
        "amount": to_decimal(txn.get("amount")) or Decimal("0"),
        "currency": currency,
        "symbol": None,
    }
