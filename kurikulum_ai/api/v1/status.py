"""Quota and credential status endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from kurikulum_ai.core.dependencies import get_orchestrator
from kurikulum_ai.generation.service import GenerationOrchestrator
from kurikulum_ai.schemas.generation import CredentialStatusResponse, QuotaStatusResponse

router = APIRouter(tags=["status"])


@router.get("/quota-status", response_model=QuotaStatusResponse)
async def quota_status(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.quota_status()


@router.post("/quota-status/reset", response_model=QuotaStatusResponse)
async def reset_quota_status(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Clear the quota monitor after adding keys or waiting out a cool-down."""
    orchestrator.reset_quota_monitor()
    return orchestrator.quota_status()


@router.get("/gemini-keys", response_model=CredentialStatusResponse)
async def gemini_keys(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Masked per-key ban state and remaining window capacity."""
    return await orchestrator.credential_status()
