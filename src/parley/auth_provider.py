"""Pluggable identity resolution for parley connections.

The provider is picked from the environment:
- PARLEY_AUTH_MODULE: Python module path for custom auth (e.g. 'myapp.auth')
- PARLEY_AUTH_URL: built-in remote verification (``parley.remote_auth``)
- neither: local identities stored in the ``identities`` table

Custom auth modules must expose:
- verify_credential(credential: str) -> AuthResult
- is_enabled() -> bool (optional)

The AuthResult dataclass is provided by this module for custom implementations.
"""

import importlib
import os
from dataclasses import dataclass, field

from .errors import AuthError


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    identity_id: str | None = None
    display_name: str | None = None
    metadata: dict | None = None
    error: str | None = None


@dataclass(frozen=True)
class Identity:
    """A verified identity, the only thing the messaging core trusts."""

    id: str
    display_name: str | None = None
    metadata: dict = field(default_factory=dict, compare=False, hash=False)


def _get_auth_module():
    """The configured external auth module, or None for local identities."""
    custom_module = os.environ.get("PARLEY_AUTH_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{custom_module}': {e}") from e

    if os.environ.get("PARLEY_AUTH_URL"):
        from . import remote_auth

        return remote_auth

    return None


def _verify_local(credential: str) -> AuthResult:
    from . import db

    identity_id = db.verify_identity_secret(credential)
    if identity_id is None:
        return AuthResult(valid=False, error="Unknown credential")
    identity = db.get_identity(identity_id) or {}
    metadata = identity.get("metadata") or {}
    return AuthResult(
        valid=True,
        identity_id=identity_id,
        display_name=metadata.get("display_name"),
        metadata=metadata,
    )


def authenticate(credential: str | None) -> Identity:
    """Resolve a credential into a verified Identity.

    Blocking: the local check reads the store and the remote check makes an
    HTTP call, so async callers run this in an executor.

    Raises:
        AuthError: Missing, malformed or rejected credential.
    """
    if not credential or not credential.strip():
        raise AuthError("Missing credential")

    module = _get_auth_module()
    if module is None:
        result = _verify_local(credential.strip())
    else:
        result = module.verify_credential(credential.strip())

    if not result.valid or not result.identity_id:
        raise AuthError(result.error or "Invalid credential")
    return Identity(
        id=result.identity_id,
        display_name=result.display_name,
        metadata=result.metadata or {},
    )


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer ...`` header."""
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None


def get_auth_method_name() -> str:
    """Name of the active auth method, for logging."""
    custom_module = os.environ.get("PARLEY_AUTH_MODULE")
    if custom_module:
        return f"custom:{custom_module}"

    if os.environ.get("PARLEY_AUTH_URL"):
        return "remote"

    return "local"
