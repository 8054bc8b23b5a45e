import asyncio

import pytest

from flint.exceptions import (
    AlreadyRegisteredError,
    CredentialError,
    ProviderUnavailableError,
    UserNotFoundError,
)
from flint.services.recovery import RecoveryCoordinator
from tests.fakes import FakeSnapTrade


@pytest.fixture
def fake():
    fake = FakeSnapTrade()
    fake.valid_secrets = set()
    return fake


@pytest.fixture
def coordinator(fake, store):
    return RecoveryCoordinator(fake, store)


def test_call_without_recovery(coordinator, fake, store):
    fake.valid_secrets.add("secret-0")
    store.ensure_credential("user-1", "remote-0", "secret-0")

    result = asyncio.run(
        coordinator.call_with_recovery("user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret))
    )
    assert result == []
    assert fake.register_calls == 0


def test_user_not_found_recovers_and_retries_once(coordinator, fake, store):
    """A deleted remote user is re-registered and the call succeeds on retry."""
    store.ensure_credential("user-1", "remote-0", "stale-secret")
    assert store.get_credential("user-1").rotated_at is None
    fake.connections = [{"id": "auth-1"}]

    result = asyncio.run(
        coordinator.call_with_recovery("user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret))
    )

    assert result == [{"id": "auth-1"}]
    assert fake.register_calls == 1
    credential = store.get_credential("user-1")
    assert credential.secret == "secret-1"
    # The deleted id itself is registered again, never a suffixed one
    assert fake.register_ids == [("remote-0", False)]
    assert credential.remote_user_id == "remote-0"
    assert credential.rotated_at is not None
    assert not coordinator.is_recovering("user-1")


def test_concurrent_failures_share_one_recovery(coordinator, fake, store):
    """Two simultaneous user-not-found errors trigger exactly one re-registration."""
    store.ensure_credential("user-1", "remote-0", "stale-secret")
    fake.register_delay = 0.01

    async def both():
        return await asyncio.gather(
            coordinator.call_with_recovery(
                "user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret)
            ),
            coordinator.call_with_recovery(
                "user-1", lambda c: fake.list_accounts(c.remote_user_id, c.secret)
            ),
        )

    connections, accounts = asyncio.run(both())

    assert connections == []
    assert accounts == []
    assert fake.register_calls == 1
    assert store.get_credential("user-1").secret == "secret-1"


def test_failed_recovery_raises_original_error(coordinator, fake, store):
    store.ensure_credential("user-1", "remote-0", "stale-secret")
    fake.register_error = ProviderUnavailableError("down", "snaptrade")

    with pytest.raises(UserNotFoundError) as exc_info:
        asyncio.run(
            coordinator.call_with_recovery(
                "user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret)
            )
        )
    assert isinstance(exc_info.value.__cause__, ProviderUnavailableError)
    assert fake.register_calls == 1
    # Back to normal: a later call may try recovery again
    assert not coordinator.is_recovering("user-1")
    assert store.get_credential("user-1").secret == "stale-secret"

    fake.register_error = None
    asyncio.run(
        coordinator.call_with_recovery("user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret))
    )
    assert fake.register_calls == 2


def test_retry_happens_only_once(coordinator, fake, store):
    """If the retried call fails again the error surfaces instead of looping."""
    store.ensure_credential("user-1", "remote-0", "stale-secret")
    fake.fail["list_connections"] = [
        UserNotFoundError("gone", "snaptrade"),
        UserNotFoundError("still gone", "snaptrade"),
    ]

    with pytest.raises(UserNotFoundError):
        asyncio.run(
            coordinator.call_with_recovery(
                "user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret)
            )
        )
    assert fake.register_calls == 1


def test_missing_credential(coordinator):
    with pytest.raises(CredentialError):
        asyncio.run(coordinator.call_with_recovery("nobody", lambda c: asyncio.sleep(0)))


def test_taken_remote_id_fails_recovery(coordinator, fake, store):
    """If the id is still registered the user was never deleted: keep the credential."""
    store.ensure_credential("user-1", "remote-0", "stale-secret")
    fake.register_error = AlreadyRegisteredError("User already exist", "snaptrade", provider_code="1010")

    with pytest.raises(UserNotFoundError) as exc_info:
        asyncio.run(
            coordinator.call_with_recovery(
                "user-1", lambda c: fake.list_connections(c.remote_user_id, c.secret)
            )
        )

    assert isinstance(exc_info.value.__cause__, AlreadyRegisteredError)
    assert fake.register_ids == [("remote-0", False)]
    credential = store.get_credential("user-1")
    assert credential.remote_user_id == "remote-0"
    assert credential.rotated_at is None
