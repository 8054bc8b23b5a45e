"""Normalization of raw provider failures into ProviderError subclasses."""

import json
import re
from collections.abc import Mapping
from typing import Any

import httpx
from snaptrade_client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from flint.exceptions import (
    AlreadyRegisteredError,
    AuthInvalidError,
    ConnectionDisabledError,
    EnrollmentDisconnectedError,
    MFARequiredError,
    OrderNotFoundError,
    ProviderError,
    ProviderUnavailableError,
    ProviderValidationError,
    RateLimitedError,
    ResourceNotFoundError,
    UserNotFoundError,
)

SNAPTRADE_ALREADY_REGISTERED = "1010"
SNAPTRADE_INVALID_CREDENTIALS = "1083"

_USER_MISSING = re.compile(r"\buser\b.*\b(not found|does not exist|deleted)\b")


def parse_body(raw: Any) -> dict:
    """Best-effort decode of an error body into a dict."""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"message": raw}
        return parsed if isinstance(parsed, dict) else {"data": parsed}
    return {"message": str(raw)}


def lower_headers(headers: Any) -> dict[str, str]:
    if not headers:
        return {}
    items = headers.items() if hasattr(headers, "items") else headers
    return {str(k).lower(): str(v) for k, v in items}


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After in seconds (the HTTP-date form is ignored)."""
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _message(body: dict, fallback: str) -> str:
    for key in ("detail", "message", "error_description"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return fallback


def _names_user(code: str | None, lowered: str) -> bool:
    if code and "USER" in code.upper():
        return True
    return bool(_USER_MISSING.search(lowered))


def classify_snaptrade_error(exc: Exception, *, user_scoped: bool = False) -> ProviderError:
    """
    Map an SDK exception (or network failure) to a typed ProviderError.

    A 404/410 means the remote user is gone only on a user_scoped call or
    when the provider says so; otherwise it is about an account,
    authorization or order and must not trigger re-registration.
    """
    if isinstance(exc, (Urllib3HTTPError, OSError)):
        return ProviderUnavailableError(f"network error: {exc}", "snaptrade")
    if not isinstance(exc, ApiException):
        return ProviderError(f"unexpected error: {exc}", "snaptrade")

    status = getattr(exc, "status", None)
    body = parse_body(getattr(exc, "body", None))
    headers = lower_headers(getattr(exc, "headers", None))
    code = body.get("code")
    code = str(code) if code is not None else None
    message = _message(body, str(getattr(exc, "reason", None) or exc))
    lowered = message.lower()

    kwargs = {
        "status_code": status,
        "provider_code": code,
        "provider_request_id": headers.get("x-request-id"),
        "retry_after": parse_retry_after(headers.get("retry-after")),
        "response_body": body,
    }

    if code == SNAPTRADE_ALREADY_REGISTERED or "already exist" in lowered:
        return AlreadyRegisteredError(message, "snaptrade", **kwargs)
    if status == 429 or code == "RATE_LIMIT_EXCEEDED":
        return RateLimitedError(message, "snaptrade", **kwargs)
    if code == "CONNECTION_DISABLED" or status == 409:
        return ConnectionDisabledError(message, "snaptrade", **kwargs)
    if code == "ORDER_NOT_FOUND":
        return OrderNotFoundError(message, "snaptrade", **kwargs)
    if code == "ORDER_ALREADY_FILLED":
        return ProviderValidationError("order already filled", "snaptrade", **kwargs)
    if code == SNAPTRADE_INVALID_CREDENTIALS or "invalid userid or usersecret" in lowered:
        return AuthInvalidError(message, "snaptrade", **kwargs)
    if status in (401, 403):
        return AuthInvalidError(message, "snaptrade", **kwargs)
    if status in (404, 410):
        if user_scoped or _names_user(code, lowered):
            return UserNotFoundError(message, "snaptrade", **kwargs)
        return ResourceNotFoundError(message, "snaptrade", **kwargs)
    if status in (400, 422):
        return ProviderValidationError(message, "snaptrade", **kwargs)
    if status is not None and status >= 500:
        return ProviderUnavailableError(message, "snaptrade", **kwargs)
    return ProviderError(message, "snaptrade", **kwargs)


def classify_teller_error(exc: Exception) -> ProviderError:
    """Map an httpx failure from the Teller API to a typed ProviderError."""
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailableError(f"network error: {exc}", "teller")
    if not isinstance(exc, httpx.HTTPStatusError):
        return ProviderError(f"unexpected error: {exc}", "teller")

    response = exc.response
    status = response.status_code
    body = parse_body(response.content)
    error_obj = body.get("error") if isinstance(body.get("error"), dict) else body
    code = error_obj.get("code")
    message = _message(error_obj, f"HTTP {status}")

    kwargs = {
        "status_code": status,
        "provider_code": code,
        "provider_request_id": response.headers.get("x-request-id")
        or response.headers.get("request-id"),
        "retry_after": parse_retry_after(response.headers.get("retry-after")),
        "response_body": body,
    }

    if body.get("connect_token"):
        return MFARequiredError(
            "multi-factor authentication required",
            "teller",
            continuation_token=body["connect_token"],
            **kwargs,
        )
    if status == 404 and str(code or "").startswith("enrollment.disconnected"):
        return EnrollmentDisconnectedError(message, "teller", **kwargs)
    if status == 410 and code == "account.closed":
        return ConnectionDisabledError(message, "teller", **kwargs)
    if status == 429:
        return RateLimitedError(message, "teller", **kwargs)
    if status >= 500:
        return ProviderUnavailableError(message, "teller", **kwargs)
    if status in (401, 403):
        return AuthInvalidError(message, "teller", **kwargs)
    if status in (400, 422) or status == 404 and str(code or "").startswith(
        "account_number_verification"
    ):
        return ProviderValidationError(message, "teller", **kwargs)
    return ProviderError(message, "teller", **kwargs)
