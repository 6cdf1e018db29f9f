from fastapi import APIRouter

from docflow.api.v1.endpoints import documents, runs

# Create API router
api_router = APIRouter()

api_router.include_router(runs.router, prefix="/runs", tags=["Runs"])
api_router.include_router(documents.router, prefix="/documents", tags=["Documents"])

__all__ = ["api_router"]
