from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from loreauth.logging import get_logger
from loreauth.storage.errors import ConstraintViolation, IdentityStoreError
from loreauth.storage.models import UserRecord

logger = get_logger(__name__)


class DirectusIdentityStore:
    """Identity store client for a Directus-style users REST API.

    Every method is a single HTTP round trip; nothing here assumes two calls
    are atomic. Transport failures and non-2xx responses surface as
    ``IdentityStoreError`` so callers can translate them at their boundary.
    """

    def __init__(
        self,
        base_url: str,
        admin_token: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if admin_token:
            headers["Authorization"] = f"Bearer {admin_token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(
                "identity_store_unreachable",
                method=method,
                path=path,
                error_type=type(exc).__name__,
            )
            raise IdentityStoreError("identity store unreachable") from exc
        if response.status_code >= 400:
            logger.warning(
                "identity_store_http_error",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            detail = _error_detail(response)
            if response.status_code == 409 or _is_duplicate(detail):
                raise ConstraintViolation("user already exists", detail)
            raise IdentityStoreError(
                f"identity store returned {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )
        return response

    @staticmethod
    def _data(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError as exc:
            raise IdentityStoreError("identity store returned invalid JSON") from exc
        if not isinstance(body, dict) or "data" not in body:
            raise IdentityStoreError("identity store response missing data")
        return body["data"]

    async def find_user_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        needle = identifier.strip().lower()
        field = "email" if "@" in needle else "external_identifier"
        response = await self._request(
            "GET",
            "/users",
            params={f"filter[{field}][_eq]": needle, "limit": "1"},
        )
        rows = self._data(response)
        if not isinstance(rows, list) or not rows:
            return None
        return UserRecord.from_payload(rows[0])

    async def create_user(self, fields: Dict[str, Any]) -> UserRecord:
        response = await self._request("POST", "/users", json=fields)
        data = self._data(response)
        if not isinstance(data, dict) or "id" not in data:
            raise IdentityStoreError("identity store create response missing id")
        user = UserRecord.from_payload(data)
        logger.info("identity_user_created", user_id=user.id, provider=user.provider)
        return user

    async def patch_user(self, user_id: str, fields: Dict[str, Any]) -> UserRecord:
        response = await self._request("PATCH", f"/users/{user_id}", json=fields)
        return UserRecord.from_payload(self._data(response))

    async def request_password_reset(self, email: str, reset_url: str) -> bool:
        try:
            await self._request(
                "POST",
                "/auth/password/request",
                json={"email": email.strip().lower(), "reset_url": reset_url},
            )
        except IdentityStoreError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def close(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"status_code": response.status_code}
    if isinstance(body, dict):
        return {"status_code": response.status_code, "errors": body.get("errors")}
    return {"status_code": response.status_code}


def _is_duplicate(detail: Dict[str, Any]) -> bool:
    errors = detail.get("errors")
    if not isinstance(errors, list):
        return False
    for err in errors:
        code = (err.get("extensions") or {}).get("code") if isinstance(err, dict) else None
        if code == "RECORD_NOT_UNIQUE":
            return True
    return False
