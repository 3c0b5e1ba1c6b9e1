from fastapi import APIRouter

from setwatch.api.routes import datasets, health, jobs, reconcile

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(datasets.router, prefix="/datasets", tags=["pipeline"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(reconcile.router, prefix="/reconcile", tags=["reconcile"])
