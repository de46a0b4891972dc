"""API router that aggregates all routes."""

from fastapi import APIRouter

from connectors.api.routes import connectors, google, health, webhooks

api_router = APIRouter(prefix="/api")

# Unversioned: Drive posts notifications to the address registered with it
api_router.include_router(health.router)
api_router.include_router(webhooks.router)

# V1 API routes
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(connectors.router)
v1_router.include_router(google.router)

api_router.include_router(v1_router)
