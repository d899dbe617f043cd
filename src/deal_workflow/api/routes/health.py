"""Health check endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Check Postgres connectivity; the in-memory store is always healthy."""
    postgres = request.app.state.postgres
    if postgres is None:
        return {"status": "ok", "store": "memory"}
    if await postgres.verify_connectivity():
        return {"status": "ok", "store": "postgres"}
    return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "postgres"})
