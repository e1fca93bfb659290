"""Supabase JWT and API-key authentication for FastAPI endpoints."""

from threading import Lock
from typing import Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client, create_client

from stcredit.config import StCreditConfig
from stcredit.dependencies import get_app_config, get_supabase_client_provider

bearer_scheme = HTTPBearer(auto_error=False)


class SupabaseClientProvider:
    """App-scoped lazy Supabase client shared by auth and storage."""

    def __init__(self, config: StCreditConfig) -> None:
        self._config = config
        self._client: Optional[Client] = None
        self._lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self._config.supabase_url and self._config.supabase_service_role_key)

    def get_client(self) -> Client:
        if not self.configured:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Supabase is not configured",
            )

        if self._client is not None:
            return self._client

        with self._lock:
            if self._client is None:
                self._client = create_client(
                    self._config.supabase_url,
                    self._config.supabase_service_role_key,
                )
        return self._client


def get_supabase_client(
    provider: SupabaseClientProvider = Depends(get_supabase_client_provider),
) -> Optional[Client]:
    """Resolve a Supabase client, or None when Supabase is not configured."""
    if not provider.configured:
        return None
    return provider.get_client()


def fetch_supabase_user(token: str, client: Client) -> dict[str, Any]:
    """Return user payload for a verified Supabase JWT."""
    response = client.auth.get_user(token)
    user = response.user if response is not None else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if hasattr(user, "model_dump"):
        return user.model_dump(mode="json")
    return dict(user) if isinstance(user, dict) else {"id": getattr(user, "id", None)}


async def verify_supabase_jwt(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    config: StCreditConfig = Depends(get_app_config),
    client: Optional[Client] = Depends(get_supabase_client),
) -> dict[str, Any]:
    """
    Verify the bearer token and return the caller.

    Configured API keys are accepted first; anything else is checked against
    Supabase auth.
    """
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    token = credentials.credentials
    if config.allow_api_key_auth and token in config.get_api_keys():
        return {"id": "api-key-user", "auth": "api_key"}

    if client is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    try:
        return fetch_supabase_user(token, client)
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def operator_from_user(user: dict[str, Any], fallback: str) -> str:
    """Operator identity recorded on locks and reviews."""
    return str(user.get("email") or user.get("id") or fallback)
