"""Admin bearer-token verification — configured once at startup."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class AdminTokenVerifier:
    """Verify identity-provider bearer tokens and check realm roles.

    Tokens are checked either against a shared HMAC secret or against the
    provider's JWKS document, fetched lazily on first use and cached.
    """

    def __init__(
        self,
        *,
        secret: str = "",
        algorithms: list[str] | None = None,
        jwks_url: str = "",
        issuer: str = "",
        audience: str = "",
    ) -> None:
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]
        self._jwks_url = jwks_url
        self._issuer = issuer
        self._audience = audience
        self._jwks: dict[str, Any] | None = None

    @property
    def is_configured(self) -> bool:
        """True if a secret or JWKS URL is set."""
        return bool(self._secret or self._jwks_url)

    async def _signing_key(self) -> str | dict[str, Any]:
        """Return the key material jose should verify against."""
        if not self._jwks_url:
            return self._secret
        if self._jwks is None:
            async with httpx.AsyncClient(timeout=10.0) as http_client:
                response = await http_client.get(self._jwks_url)
            if response.status_code != 200:
                raise ValueError(
                    f"JWKS fetch failed with HTTP {response.status_code}",
                )
            self._jwks = response.json()
            logger.info("Loaded admin JWKS from %s", self._jwks_url)
        return self._jwks

    async def verify(self, token: str) -> dict[str, Any]:
        """Decode and verify a bearer token.

        Returns:
            Decoded claims dict.

        Raises:
            ValueError: If the verifier is unconfigured or the token is invalid.
        """
        if not self.is_configured:
            raise ValueError("Admin token verification is not configured")
        key = await self._signing_key()
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                issuer=self._issuer or None,
                audience=self._audience or None,
                options={"verify_aud": bool(self._audience)},
            )
        except JWTError as error:
            raise ValueError(f"Invalid token: {error}") from error
        return claims

    @staticmethod
    def has_role(claims: dict[str, Any], role: str) -> bool:
        """True if ``role`` is in ``realm_access.roles`` or a flat ``roles`` claim."""
        realm_access = claims.get("realm_access")
        realm_roles: object = (
            realm_access.get("roles", []) if isinstance(realm_access, dict) else []
        )
        flat_roles: object = claims.get("roles", [])
        for roles in (realm_roles, flat_roles):
            if isinstance(roles, list) and role in roles:
                return True
        return False
