"""Health and backend model listing."""
from fastapi import APIRouter, Depends, HTTPException

from advisor.dependencies import get_runtime
from advisor.services.runtime import Runtime

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(runtime: Runtime = Depends(get_runtime)):
    """Backend reachability, circuit breaker state and queue counts."""
    client = runtime.client
    backend_ok = await client.health_check() if hasattr(client, "health_check") else None
    return {
        "status": "ok" if backend_ok is not False else "degraded",
        "backend": {
            "reachable": backend_ok,
            "models": runtime.settings.model_list,
        },
        "circuit_breaker": runtime.breaker.stats() if runtime.breaker else None,
        "queue": runtime.scheduler.statistics().to_dict(),
    }


@router.get("/models")
async def list_models(runtime: Runtime = Depends(get_runtime)):
    """Models the backend reports as installed."""
    client = runtime.client
    if not hasattr(client, "list_models"):
        raise HTTPException(501, "Backend does not support model listing")
    try:
        models = await client.list_models()
    except Exception as e:
        raise HTTPException(502, f"Could not list models: {e}")
    return {"configured": runtime.settings.model_list, "available": models}
