"""FastAPI dependencies.

Usage in routes:
    from advisor.dependencies import get_runtime

    @router.get("/items")
    async def list_items(runtime: Runtime = Depends(get_runtime)):
        return runtime.scheduler.list_jobs()
"""
from fastapi import Request

from advisor.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The Runtime built by the application lifespan."""
    return request.app.state.runtime
