from fastapi import APIRouter, Request

from schemas.rooms import HealthResponse

health_router = APIRouter(tags=["health"])


@health_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    stats = request.app.state.gateway.stats()
    return HealthResponse(status="UP", message="Chat relay is running", **stats)
