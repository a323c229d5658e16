from fastapi import HTTPException, Request

from kurikulum_ai.gateway.errors import ProvidersExhaustedError
from kurikulum_ai.generation.service import GenerationOrchestrator


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Orchestrator built in the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Generation service is not ready")
    return orchestrator


def require_quota_available(request: Request) -> None:
    """Reject generation early while the quota monitor reports exhaustion."""
    if get_orchestrator(request).monitor.is_exhausted:
        raise ProvidersExhaustedError("quota monitor cool-down active", quota_exhausted=True)
