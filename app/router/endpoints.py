"""
API Router - all endpoints.
"""
from fastapi import APIRouter
from app.router.api.v1 import chat, live, requests

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(
    requests.router,
    prefix="/requests",
    tags=["Ride Requests"],
)

api_router.include_router(
    chat.router,
    prefix="/chat",
    tags=["Chat"],
)

api_router.include_router(
    live.router,
    prefix="/live",
    tags=["Live"],
)
