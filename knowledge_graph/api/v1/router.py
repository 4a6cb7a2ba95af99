from fastapi import APIRouter
from knowledge_graph.api.v1.endpoints import knowledge

# Create API router
api_router = APIRouter()

api_router.include_router(knowledge.router, prefix="/knowledge", tags=["Knowledge Graph"])

__all__ = ["api_router"]
