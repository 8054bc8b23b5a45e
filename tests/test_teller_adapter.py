import asyncio
import base64
import hashlib
import hmac
import time

import httpx
import pytest

from flint.exceptions import (
    AuthInvalidError,
    ConfigurationError,
    ConnectionDisabledError,
    EnrollmentDisconnectedError,
    MFARequiredError,
    ProviderUnavailableError,
)
from flint.services.providers.errors import classify_teller_error
from flint.services.providers.teller import TellerAdapter, format_pem, verify_webhook_signature
from flint.services.transport import ResilientTransport, RetryPolicy


async def no_sleep(delay):
    return None


def make_adapter(handler):
    transport = ResilientTransport("teller", classify_teller_error, RetryPolicy(jitter_ms=0), sleep=no_sleep)
    return TellerAdapter(
        "https://api.teller.test", transport, http_transport=httpx.MockTransport(handler)
    )


def run(adapter, coro):
    async def _run():
        try:
            return await coro
        finally:
            await adapter.aclose()

    return asyncio.run(_run())


def test_requests_use_basic_auth_and_request_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "acc_1"}])

    adapter = make_adapter(handler)
    accounts = run(adapter, adapter.list_accounts("token_abc"))

    assert accounts == [{"id": "acc_1"}]
    request = seen[0]
    assert request.url.path == "/accounts"
    expected = base64.b64encode(b"token_abc:").decode()
    assert request.headers["authorization"] == f"Basic {expected}"
    assert request.headers["x-request-id"].startswith("req_")


def test_transactions_pass_pagination_params():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    adapter = make_adapter(handler)
    run(adapter, adapter.list_transactions("token", "acc_1", count=50, from_id="txn_9"))

    params = seen[0].url.params
    assert params["count"] == "50"
    assert params["from_id"] == "txn_9"


def test_server_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, json={"error": {"code": "unavailable", "message": "down"}})
        return httpx.Response(200, json={"ledger": "10.00"})

    adapter = make_adapter(handler)
    assert run(adapter, adapter.get_balances("token", "acc_1")) == {"ledger": "10.00"}
    assert len(calls) == 2


def test_disconnected_enrollment():
    def handler(request):
        return httpx.Response(
            404, json={"error": {"code": "enrollment.disconnected.user_action.mfa_required", "message": "gone"}}
        )

    adapter = make_adapter(handler)
    with pytest.raises(EnrollmentDisconnectedError):
        run(adapter, adapter.list_accounts("token"))


def test_closed_account_and_auth_errors():
    def closed(request):
        return httpx.Response(410, json={"error": {"code": "account.closed", "message": "closed"}})

    adapter = make_adapter(closed)
    with pytest.raises(ConnectionDisabledError) as exc_info:
        run(adapter, adapter.get_account("token", "acc_1"))
    assert exc_info.value.provider_code == "account.closed"

    adapter = make_adapter(lambda request: httpx.Response(401, json={"error": {"code": "unauthorized"}}))
    with pytest.raises(AuthInvalidError):
        run(adapter, adapter.list_accounts("token"))


def test_payment_mfa_and_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"connect_token": "ct_123"})

    adapter = make_adapter(handler)
    # A 200 with a connect token is a successful call; MFA arrives as an error status
    run(adapter, adapter.create_payment("token", "acc_1", "10.00", "rent", {"scheme": "zelle"}, "idem-1"))
    assert seen[0].headers["idempotency-key"] == "idem-1"

    adapter = make_adapter(lambda request: httpx.Response(403, json={"connect_token": "ct_123"}))
    with pytest.raises(MFARequiredError) as exc_info:
        run(adapter, adapter.create_payment("token", "acc_1", "10.00", "rent", {"scheme": "zelle"}))
    assert exc_info.value.continuation_token == "ct_123"


def test_network_errors_become_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    adapter = make_adapter(handler)
    with pytest.raises(ProviderUnavailableError):
        run(adapter, adapter.list_accounts("token"))


def test_delete_account_handles_empty_body():
    adapter = make_adapter(lambda request: httpx.Response(204))
    assert run(adapter, adapter.delete_account("token", "acc_1")) is None


def test_format_pem_restores_line_breaks():
    body = "A" * 100
    flat = f"-----BEGIN CERTIFICATE-----{body}-----END CERTIFICATE-----"
    formatted = format_pem(flat)
    lines = formatted.strip().split("\n")
    assert lines[0] == "-----BEGIN CERTIFICATE-----"
    assert lines[1] == "A" * 64
    assert lines[2] == "A" * 36
    assert lines[-1] == "-----END CERTIFICATE-----"
    # Already formatted values are untouched
    assert format_pem(formatted) == formatted


def test_production_requires_certificate(settings):
    settings.teller_environment = "production"
    with pytest.raises(ConfigurationError):
        TellerAdapter.from_settings(settings)


def test_sandbox_skips_mtls(settings):
    adapter = TellerAdapter.from_settings(settings)
    assert adapter.uses_mtls is False
    asyncio.run(adapter.aclose())


def sign(payload: str, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_webhook_signature_valid():
    payload = '{"type": "webhook.test"}'
    now = int(time.time())
    assert verify_webhook_signature(payload, sign(payload, "whsec", now), "whsec", now=now)


def test_webhook_signature_replay_rejected():
    """A correctly signed payload older than 180 seconds is rejected."""
    payload = '{"type": "webhook.test"}'
    now = int(time.time())
    header = sign(payload, "whsec", now - 181)
    assert not verify_webhook_signature(payload, header, "whsec", now=now)


def test_webhook_signature_rejects_wrong_secret_and_garbage():
    payload = "{}"
    now = int(time.time())
    assert not verify_webhook_signature(payload, sign(payload, "other", now), "whsec", now=now)
    assert not verify_webhook_signature(payload, "garbage", "whsec", now=now)
    assert not verify_webhook_signature(payload, None, "whsec", now=now)
    assert not verify_webhook_signature(payload, sign(payload, "whsec", now), None, now=now)


def test_webhook_signature_accepts_any_rolled_secret():
    payload = "{}"
    now = int(time.time())
    good = sign(payload, "whsec", now).split(",")[1]
    header = f"t={now},v1={'0' * 64},{good}"
    assert verify_webhook_signature(payload, header, "whsec", now=now)


def test_payment_discovery_and_identity_endpoints():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        if request.method == "OPTIONS":
            return httpx.Response(200, json={"schemes": [{"name": "zelle"}]})
        return httpx.Response(200, json=[])

    adapter = make_adapter(handler)

    async def calls():
        schemes = await adapter.get_payment_schemes("token", "acc_1")
        payments = await adapter.list_payments("token", "acc_1")
        identity = await adapter.get_identity("token")
        return schemes, payments, identity

    schemes, payments, identity = run(adapter, calls())

    assert schemes["schemes"][0]["name"] == "zelle"
    assert payments == []
    assert identity == []
    assert seen == [
        ("OPTIONS", "/accounts/acc_1/payments"),
        ("GET", "/accounts/acc_1/payments"),
        ("GET", "/identity"),
    ]


def test_webhook_signature_future_timestamp_rejected():
    payload = '{"type": "webhook.test"}'
    now = int(time.time())
    assert verify_webhook_signature(payload, sign(payload, "whsec", now + 60), "whsec", now=now)
    assert not verify_webhook_signature(payload, sign(payload, "whsec", now + 181), "whsec", now=now)


def test_webhook_signature_over_raw_bytes():
    now = int(time.time())
    assert not verify_webhook_signature(b"\xff\xfe{", f"t={now},v1=ab", "whsec", now=now)
    assert not verify_webhook_signature(b"{}", f"t={now},v1=éé", "whsec", now=now)

    body = b"\xff\xfe{"
    digest = hmac.new(b"whsec", f"{now}.".encode() + body, hashlib.sha256).hexdigest()
    assert verify_webhook_signature(body, f"t={now},v1={digest}", "whsec", now=now)
