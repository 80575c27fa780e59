from fastapi import APIRouter

from opscord.api.routes import activities, health, jobs, queue, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(activities.router, prefix="/activities", tags=["activities"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
