# pharmatrace/core/deps.py
from __future__ import annotations

import uuid
from functools import lru_cache

from fastapi import Depends

from pharmatrace.core.config import Settings, get_settings
from pharmatrace.core.errors import ValidationError
from pharmatrace.services.chain_adapter import ChainAdapter
from pharmatrace.services.lifecycle_service import LifecycleService
from pharmatrace.services.verification_service import VerificationService


@lru_cache
def get_chain_adapter() -> ChainAdapter:
    """Process-wide adapter; tests override this dependency with a faked transport."""
    return ChainAdapter.from_settings(get_settings())


def get_lifecycle_service(
    adapter: ChainAdapter = Depends(get_chain_adapter),
    settings: Settings = Depends(get_settings),
) -> LifecycleService:
    return LifecycleService(adapter, settings)


def get_verification_service(
    adapter: ChainAdapter = Depends(get_chain_adapter),
) -> VerificationService:
    return VerificationService(adapter)


def parse_uuid(raw: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ValidationError(f"{field} must be UUID.")
