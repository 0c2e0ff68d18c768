"""Credential verification against a remote auth service.

Enabled by setting PARLEY_AUTH_URL. The service must answer
``POST {url}/verify`` with ``{"credential": "..."}`` and reply
``{"valid": bool, "identity_id": str, "display_name": str, "metadata": {...}}``.
"""

import os

import httpx

from .auth_provider import AuthResult

VERIFY_TIMEOUT = 5.0


def get_auth_url() -> str | None:
    return os.environ.get("PARLEY_AUTH_URL")


def is_enabled() -> bool:
    return bool(get_auth_url())


def verify_credential(credential: str) -> AuthResult:
    """Ask the auth service whether ``credential`` is valid."""
    auth_url = get_auth_url()
    if not auth_url:
        return AuthResult(valid=False, error="PARLEY_AUTH_URL not configured")

    try:
        response = httpx.post(
            f"{auth_url.rstrip('/')}/verify",
            json={"credential": credential},
            timeout=VERIFY_TIMEOUT,
        )
    except httpx.RequestError as e:
        return AuthResult(valid=False, error=f"Auth service unavailable: {e}")

    if response.status_code != 200:
        return AuthResult(valid=False, error=f"Auth service returned {response.status_code}")

    data = response.json()
    return AuthResult(
        valid=bool(data.get("valid", False)),
        identity_id=data.get("identity_id"),
        display_name=data.get("display_name"),
        metadata=data.get("metadata") or {},
        error=data.get("error"),
    )
