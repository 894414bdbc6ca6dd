from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from loreauth.storage.models import UserRecord


class IdentityStore(Protocol):
    """External user directory; every call is independent and idempotent from our side."""

    async def find_user_by_identifier(self, identifier: str) -> Optional[UserRecord]: ...

    async def create_user(self, fields: Dict[str, Any]) -> UserRecord: ...

    async def patch_user(self, user_id: str, fields: Dict[str, Any]) -> UserRecord: ...

    async def request_password_reset(self, email: str, reset_url: str) -> bool: ...

    async def close(self) -> None: ...


def synthetic_wallet_email(address: str, domain: str) -> str:
    """Deterministic directory identifier for a wallet address."""
    return f"{address.lower()}@{domain}"


def wallet_user_fields(address: str, domain: str, role: str) -> Dict[str, Any]:
    normalized = address.lower()
    return {
        "email": synthetic_wallet_email(normalized, domain),
        "first_name": "Wallet",
        "last_name": f"{address[:6]}...{address[-4:]}",
        "external_identifier": f"wallet:{normalized}",
        "provider": "wallet",
        "role": role,
        "status": "active",
    }
