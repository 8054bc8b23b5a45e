"""Persistence of per-user provider registrations."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flint.exceptions import CredentialError
from flint.logging_config import mask_identifier
from flint.models import SNAPTRADE, UserCredential
from flint.models.base import utcnow
from flint.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Decrypted view of a stored registration."""

    local_user_id: str
    provider: str
    remote_user_id: str
    secret: str
    created_at: datetime
    rotated_at: datetime | None = None
    institution_name: str | None = None

    def __repr__(self) -> str:
        return (
            f"Credential(local_user_id={self.local_user_id!r}, provider={self.provider!r}, "
            f"remote_user_id={mask_identifier(self.remote_user_id)!r}, "
            f"secret=<{len(self.secret)} chars>)"
        )


class CredentialStore:
    """
    Data-access boundary for UserCredential rows.

    Every method opens its own short session so callers never hold a
    transaction across a provider call. Writes that rotate a secret must be
    serialized by the caller (see RecoveryCoordinator).
    """

    def __init__(self, session_factory: sessionmaker, encryption: EncryptionService):
        self._session_factory = session_factory
        self._encryption = encryption

    def get_credential(self, local_user_id: str, provider: str = SNAPTRADE) -> Credential | None:
        with self._session_factory() as db:
            row = _find(db, local_user_id, provider)
            return self._to_credential(row) if row else None

    def ensure_credential(
        self,
        local_user_id: str,
        remote_user_id: str,
        secret: str,
        provider: str = SNAPTRADE,
        institution_name: str | None = None,
    ) -> Credential:
        """Insert or update the registration for a user. Safe to call repeatedly."""
        with self._session_factory() as db:
            row = _find(db, local_user_id, provider)
            if row is None:
                row = UserCredential(local_user_id=local_user_id, provider=provider)
                db.add(row)
            self._apply(row, remote_user_id, secret, institution_name)
            try:
                db.commit()
            except IntegrityError:
                # Lost an insert race: the row now exists, update it instead
                db.rollback()
                row = _find(db, local_user_id, provider)
                if row is None:
                    raise
                self._apply(row, remote_user_id, secret, institution_name)
                db.commit()
            db.refresh(row)
            logger.info(
                "Stored %s credential for user %s (remote %s)",
                provider,
                local_user_id,
                mask_identifier(remote_user_id),
            )
            return self._to_credential(row)

    def rotate_credential(
        self,
        local_user_id: str,
        new_remote_user_id: str,
        new_secret: str,
        provider: str = SNAPTRADE,
    ) -> Credential:
        """Replace the remote identity and secret, recording rotated_at."""
        with self._session_factory() as db:
            row = _find(db, local_user_id, provider)
            if row is None:
                row = UserCredential(local_user_id=local_user_id, provider=provider)
                db.add(row)
            previous = row.remote_user_id
            self._apply(row, new_remote_user_id, new_secret)
            row.rotated_at = utcnow()
            db.commit()
            db.refresh(row)
            logger.warning(
                "Rotated %s credential for user %s: %s -> %s (secret length %d)",
                provider,
                local_user_id,
                mask_identifier(previous),
                mask_identifier(new_remote_user_id),
                len(new_secret),
            )
            return self._to_credential(row)

    def delete_credential(self, local_user_id: str, provider: str = SNAPTRADE) -> bool:
        with self._session_factory() as db:
            row = _find(db, local_user_id, provider)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            logger.warning("Deleted %s credential for user %s", provider, local_user_id)
            return True

    def list_credentials(self, provider: str = SNAPTRADE) -> list[Credential]:
        with self._session_factory() as db:
            rows = (
                db.query(UserCredential)
                .filter(UserCredential.provider == provider)
                .order_by(UserCredential.id)
                .all()
            )
            return [self._to_credential(row) for row in rows]

    def find_by_remote_user_id(self, provider: str, remote_user_id: str) -> Credential | None:
        """Map a provider-side identity (e.g. from a webhook) back to a local user."""
        with self._session_factory() as db:
            row = (
                db.query(UserCredential)
                .filter(
                    UserCredential.provider == provider,
                    UserCredential.remote_user_id == remote_user_id,
                )
                .first()
            )
            return self._to_credential(row) if row else None

    def _apply(
        self,
        row: UserCredential,
        remote_user_id: str,
        secret: str,
        institution_name: str | None = None,
    ) -> None:
        row.remote_user_id = remote_user_id
        row.encrypted_secret = self._encryption.encrypt(secret)
        if institution_name is not None:
            row.institution_name = institution_name

    def _to_credential(self, row: UserCredential) -> Credential:
        try:
            secret = self._encryption.decrypt(row.encrypted_secret)
        except CredentialError as e:
            raise CredentialError(str(e), local_user_id=row.local_user_id) from e
        return Credential(
            local_user_id=row.local_user_id,
            provider=row.provider,
            remote_user_id=row.remote_user_id,
            secret=secret,
            created_at=row.created_at,
            rotated_at=row.rotated_at,
            institution_name=row.institution_name,
        )


def _find(db: Session, local_user_id: str, provider: str) -> UserCredential | None:
    return (
        db.query(UserCredential)
        .filter(
            UserCredential.local_user_id == local_user_id,
            UserCredential.provider == provider,
        )
        .first()
    )
