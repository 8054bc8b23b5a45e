"""Teller banking API client with optional mutual TLS."""

import hashlib
import hmac
import logging
import os
import re
import ssl
import tempfile
import time
from typing import Any

import httpx

from flint.config import Settings
from flint.exceptions import ConfigurationError
from flint.logging_config import mask_identifier
from flint.services.encryption import generate_token
from flint.services.providers.errors import classify_teller_error
from flint.services.transport import ResilientTransport, RetryPolicy

logger = logging.getLogger(__name__)

USER_AGENT = "Flint/1.0"
PEM_LINE_LENGTH = 64
_PEM_PATTERN = re.compile(r"(-----BEGIN [A-Z ]+-----)(.*?)(-----END [A-Z ]+-----)", re.DOTALL)


def format_pem(value: str) -> str:
    """
    Restore line breaks in a PEM block that was flattened onto one line.

    Environment variables often lose newlines; values that already contain
    them, or that are not PEM at all, are returned unchanged.
    """
    if "\n" in value:
        return value
    match = _PEM_PATTERN.search(value.strip())
    if not match:
        return value
    header, body, footer = match.groups()
    body = re.sub(r"\s+", "", body)
    lines = [body[i : i + PEM_LINE_LENGTH] for i in range(0, len(body), PEM_LINE_LENGTH)]
    return "\n".join([header, *lines, footer]) + "\n"


def build_mtls_context(cert_pem: str, key_pem: str) -> ssl.SSLContext:
    """SSL context presenting the Teller client certificate."""
    context = ssl.create_default_context()
    # load_cert_chain only accepts paths
    with tempfile.TemporaryDirectory(prefix="flint-teller-") as tmpdir:
        cert_path = os.path.join(tmpdir, "cert.pem")
        key_path = os.path.join(tmpdir, "key.pem")
        with open(cert_path, "w") as f:
            f.write(format_pem(cert_pem))
        with open(key_path, "w") as f:
            f.write(format_pem(key_pem))
        os.chmod(key_path, 0o600)
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context


def verify_webhook_signature(
    payload: str | bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    max_age_seconds: int = 180,
    now: float | None = None,
) -> bool:
    """
    Verify a `Teller-Signature` header of the form `t=<unix>,v1=<hex>[,v1=<hex>]`.

    The signed message is `"{t}.{payload}"` (HMAC-SHA256 with the webhook
    secret). Signatures whose timestamp is more than max_age_seconds from
    now, in either direction, are rejected to prevent replays. Any matching
    v1 value is accepted (secrets can be rolled).
    """
    if not secret or not signature_header:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    timestamp: str | None = None
    signatures: list[str] = []
    for element in signature_header.split(","):
        key, _, value = element.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value.lower())

    if timestamp is None or not signatures:
        logger.warning("Teller webhook signature header is malformed")
        return False
    try:
        signed_at = int(timestamp)
    except ValueError:
        logger.warning("Teller webhook signature timestamp is not an integer")
        return False

    current = int(now if now is not None else time.time())
    if abs(current - signed_at) > max_age_seconds:
        logger.warning("Teller webhook signature is %ds off the clock, rejecting", current - signed_at)
        return False

    # Signed over the raw bytes, so bodies that are not UTF-8 simply fail to match
    expected = hmac.new(
        secret.encode(), timestamp.encode() + b"." + payload, hashlib.sha256
    ).hexdigest()
    return any(
        hmac.compare_digest(expected.encode(), candidate.encode("utf-8", "replace"))
        for candidate in signatures
    )


class TellerAdapter:
    """
    Async client for the Teller REST API.

    Every request authenticates with the enrollment access token (HTTP basic,
    token as username) and carries the transport's correlation id as
    X-Request-ID. Outside sandbox the client certificate is presented.
    """

    provider = "teller"

    def __init__(
        self,
        base_url: str = "https://api.teller.io",
        transport: ResilientTransport | None = None,
        *,
        ssl_context: ssl.SSLContext | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.transport = transport or ResilientTransport(self.provider, classify_teller_error)
        self.uses_mtls = ssl_context is not None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            verify=ssl_context if ssl_context is not None else True,
            transport=http_transport,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TellerAdapter":
        ssl_context = None
        if settings.teller_uses_mtls:
            if not settings.teller_cert or not settings.teller_private_key:
                raise ConfigurationError(
                    f"Teller {settings.teller_environment} requires teller_cert and teller_private_key"
                )
            ssl_context = build_mtls_context(settings.teller_cert, settings.teller_private_key)
            logger.info("Teller mTLS enabled for %s", settings.teller_environment)
        else:
            logger.info("Teller sandbox mode, mTLS disabled")
        transport = ResilientTransport(
            cls.provider, classify_teller_error, RetryPolicy.from_settings(settings)
        )
        return cls(settings.teller_base_url, transport, ssl_context=ssl_context)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        async def run(correlation_id: str) -> Any:
            response = await self._client.request(
                method,
                path,
                auth=(access_token, ""),
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                json=json,
                headers={"X-Request-ID": correlation_id, **(headers or {})},
            )
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        return await self.transport.execute(operation, run)

    # -- accounts ------------------------------------------------------------

    async def list_accounts(self, access_token: str) -> list[dict]:
        return await self._request("accounts.list", "GET", "/accounts", access_token) or []

    async def get_account(self, access_token: str, account_id: str) -> dict:
        return await self._request("accounts.get", "GET", f"/accounts/{account_id}", access_token)

    async def delete_account(self, access_token: str, account_id: str) -> None:
        logger.info("Removing Teller account %s", mask_identifier(account_id))
        await self._request("accounts.delete", "DELETE", f"/accounts/{account_id}", access_token)

    async def get_balances(self, access_token: str, account_id: str) -> dict:
        return await self._request(
            "accounts.balances", "GET", f"/accounts/{account_id}/balances", access_token
        )

    async def get_account_details(self, access_token: str, account_id: str) -> dict:
        return await self._request(
            "accounts.details", "GET", f"/accounts/{account_id}/details", access_token
        )

    async def list_transactions(
        self,
        access_token: str,
        account_id: str,
        count: int | None = None,
        from_id: str | None = None,
    ) -> list[dict]:
        return (
            await self._request(
                "transactions.list",
                "GET",
                f"/accounts/{account_id}/transactions",
                access_token,
                params={"count": count, "from_id": from_id},
            )
            or []
        )

    async def get_identity(self, access_token: str) -> list[dict]:
        return await self._request("identity.get", "GET", "/identity", access_token) or []

    # -- payments ------------------------------------------------------------

    async def get_payment_schemes(self, access_token: str, account_id: str) -> dict:
        return await self._request(
            "payments.schemes", "OPTIONS", f"/accounts/{account_id}/payments", access_token
        ) or {}

    async def create_payee(self, access_token: str, account_id: str, payee: dict) -> dict:
        return await self._request(
            "payments.create_payee",
            "POST",
            f"/accounts/{account_id}/payees",
            access_token,
            json=payee,
        )

    async def create_payment(
        self,
        access_token: str,
        account_id: str,
        amount: str,
        memo: str,
        payee: dict,
        idempotency_key: str | None = None,
    ) -> dict:
        """
        Initiate a payment. The idempotency key is reused across retries so a
        retried request cannot double-pay; MFA challenges surface as
        MFARequiredError carrying the connect token.
        """
        key = idempotency_key or generate_token(16)
        logger.info("Creating Teller payment from account %s", mask_identifier(account_id))
        return await self._request(
            "payments.create",
            "POST",
            f"/accounts/{account_id}/payments",
            access_token,
            json={"amount": amount, "memo": memo, "payee": payee},
            headers={"Idempotency-Key": key},
        )

    async def list_payments(self, access_token: str, account_id: str) -> list[dict]:
        return (
            await self._request(
                "payments.list", "GET", f"/accounts/{account_id}/payments", access_token
            )
            or []
        )
