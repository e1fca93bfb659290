"""Shared FastAPI app resource container and provider dependencies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from fastapi import Depends, HTTPException, Request, status

from stcredit.config import StCreditConfig
from stcredit.repositories.base import BalanceRepository
from stcredit.repositories.memory import InMemoryBalanceRepository

if TYPE_CHECKING:
    from stcredit.auth import SupabaseClientProvider


@dataclass
class AppResources:
    """App-scoped resources initialized during FastAPI lifespan."""

    config: StCreditConfig
    repository: BalanceRepository
    supabase_client_provider: SupabaseClientProvider


def build_repository(
    config: StCreditConfig, provider: "SupabaseClientProvider"
) -> BalanceRepository:
    """Create the configured balance repository."""
    if config.storage_backend == "supabase":
        from stcredit.repositories.supabase_store import SupabaseBalanceRepository

        return SupabaseBalanceRepository(provider.get_client(), config)
    return InMemoryBalanceRepository()


def get_app_resources(request: Request) -> AppResources:
    """Return initialized app resources from state."""
    resources = getattr(request.app.state, "stcredit_resources", None)
    if resources is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Application resources are not initialized",
        )
    return cast(AppResources, resources)


def get_app_config(resources: AppResources = Depends(get_app_resources)) -> StCreditConfig:
    """Get app-scoped config instance."""
    return resources.config


def get_repository(
    resources: AppResources = Depends(get_app_resources),
) -> BalanceRepository:
    """Get app-scoped balance repository."""
    return resources.repository


def get_supabase_client_provider(
    resources: AppResources = Depends(get_app_resources),
) -> "SupabaseClientProvider":
    """Get app-scoped Supabase client provider."""
    return resources.supabase_client_provider
