from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loreauth.logging import get_logger
from loreauth.service.errors import (
    InvalidInputError,
    InvalidSignatureError,
    NonceExpiredError,
    NonceNotFoundError,
    ProvisioningFailedError,
)
from loreauth.service.identity import (
    IdentityStore,
    synthetic_wallet_email,
    wallet_user_fields,
)
from loreauth.service.nonces import ConsumeResult, NonceStore, secrets_match
from loreauth.service.signatures import is_valid_address, verify_signature
from loreauth.storage.errors import ConstraintViolation, IdentityStoreError
from loreauth.storage.models import NonceRecord, UserRecord, WalletTokenRecord, utcnow

logger = get_logger(__name__)

TOKEN_NUM_BYTES = 32


def build_sign_message(app_name: str, address: str, nonce: str) -> str:
    """Text the wallet signs with ``personal_sign``."""
    return f"Sign in to {app_name}\nNonce: {nonce}\nAddress: {address}"


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class WalletVerification:
    token: str
    user: UserRecord
    address: str
    created: bool = False


class WalletChallengeService:
    """Nonce challenge-response login for EIP-191 wallets."""

    def __init__(
        self,
        nonces: NonceStore,
        identity: IdentityStore,
        *,
        app_name: str = "Lore",
        wallet_email_domain: str = "wallet.lore.meme",
        default_role: str = "creator",
        token_ttl_minutes: int = 24 * 60,
        verifier: Callable[[str, str, str], bool] = verify_signature,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.nonces = nonces
        self.identity = identity
        self.app_name = app_name
        self.wallet_email_domain = wallet_email_domain
        self.default_role = default_role
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self._verifier = verifier
        self._clock = clock or utcnow
        self._tokens: Dict[str, WalletTokenRecord] = {}
        self._tokens_lock = threading.Lock()

    @property
    def nonce_ttl_seconds(self) -> int:
        return int(self.nonces.ttl.total_seconds())

    def _validate_address(self, address: Optional[str]) -> str:
        if not address or not isinstance(address, str):
            raise InvalidInputError("address is required")
        address = address.strip()
        if not is_valid_address(address):
            raise InvalidInputError("address must be a 0x-prefixed 20-byte hex string")
        return address

    def issue_nonce(self, address: Optional[str]) -> NonceRecord:
        address = self._validate_address(address)
        return self.nonces.issue(address)

    def sign_message(self, address: str, nonce: str) -> str:
        return build_sign_message(self.app_name, address, nonce)

    async def verify(
        self,
        address: Optional[str],
        signature: Optional[str],
        message: Optional[str],
        nonce: Optional[str],
    ) -> WalletVerification:
        if not all([address, signature, message, nonce]):
            raise InvalidInputError("address, signature, message and nonce are required")
        address = self._validate_address(address)
        key = address.lower()

        record = self.nonces.get(key)
        if record is None or not secrets_match(record.nonce, nonce):
            logger.warning("wallet_verify_nonce_not_found", address=key)
            raise NonceNotFoundError()
        if not record.is_live(self._clock(), self.nonces.ttl):
            self.nonces.discard(key, record.nonce)
            logger.info("wallet_verify_nonce_expired", address=key)
            raise NonceExpiredError()

        # runs outside every lock
        if nonce not in message or not self._safe_verify(address, message, signature):
            logger.warning("wallet_verify_signature_invalid", address=key)
            raise InvalidSignatureError()

        outcome = self.nonces.consume(key, nonce)
        if outcome == ConsumeResult.NOT_FOUND:
            logger.warning("wallet_verify_nonce_race_lost", address=key)
            raise NonceNotFoundError()
        if outcome == ConsumeResult.EXPIRED:
            raise NonceExpiredError()

        user, created = await self._provision(key)
        token = secrets.token_hex(TOKEN_NUM_BYTES)
        now = self._clock()
        token_record = WalletTokenRecord(
            token_hash=_hash_token(token),
            user_id=user.id,
            address=key,
            issued_at=now,
            expires_at=now + self.token_ttl,
        )
        with self._tokens_lock:
            self._tokens[token_record.token_hash] = token_record
        logger.info("wallet_login_succeeded", address=key, user_id=user.id, created=created)
        return WalletVerification(token=token, user=user, address=key, created=created)

    def _safe_verify(self, address: str, message: str, signature: str) -> bool:
        try:
            return bool(self._verifier(address, message, signature))
        except Exception as exc:
            logger.warning(
                "wallet_signature_verifier_error",
                address=address.lower(),
                error_type=type(exc).__name__,
            )
            return False

    async def _provision(self, address: str) -> tuple[UserRecord, bool]:
        email = synthetic_wallet_email(address, self.wallet_email_domain)
        try:
            user = await self.identity.find_user_by_identifier(email)
            if user is None:
                try:
                    user = await self.identity.create_user(
                        wallet_user_fields(address, self.wallet_email_domain, self.default_role)
                    )
                    return user, True
                except ConstraintViolation:
                    # created concurrently by another verify for the same address
                    user = await self.identity.find_user_by_identifier(email)
                    if user is None:
                        raise
        except IdentityStoreError as exc:
            logger.error(
                "wallet_provisioning_failed",
                address=address,
                status_code=exc.status_code,
                error=exc.message,
            )
            raise ProvisioningFailedError() from exc

        try:
            await self.identity.patch_user(user.id, {"last_access": self._clock().isoformat()})
        except IdentityStoreError as exc:
            logger.warning(
                "wallet_last_access_update_failed",
                user_id=user.id,
                status_code=exc.status_code,
            )
        return user, False

    def resolve_token(self, token: Optional[str]) -> Optional[WalletTokenRecord]:
        if not token:
            return None
        token_hash = _hash_token(token)
        now = self._clock()
        with self._tokens_lock:
            record = self._tokens.get(token_hash)
            if record is None:
                return None
            if record.expires_at <= now:
                del self._tokens[token_hash]
                return None
            return record

    def sweep(self) -> int:
        """Remove expired nonces and tokens."""
        removed = self.nonces.sweep()
        now = self._clock()
        with self._tokens_lock:
            stale = [h for h, record in self._tokens.items() if record.expires_at <= now]
            for token_hash in stale:
                del self._tokens[token_hash]
        return removed + len(stale)
