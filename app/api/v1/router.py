"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import voice_minutes, webhooks

api_router = APIRouter()

api_router.include_router(voice_minutes.router, prefix="/voice-minutes", tags=["voice-minutes"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
