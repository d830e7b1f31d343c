from fastapi import APIRouter

from showfinder.api.routes import health, review

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(review.router, prefix="/admin-review", tags=["admin-review"])
