"""Health check endpoints."""

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

router = APIRouter()


class HealthResponse(BaseModel):
    """Liveness report."""

    status: str = Field(description="Always 'healthy' while the process serves requests")
    running_tasks: int = Field(description="Number of agent tasks currently running")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    bridge = request.app.state.bridge
    return HealthResponse(status="healthy", running_tasks=bridge.running_task_count)
