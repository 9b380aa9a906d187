# app/api/v1/api.py

from fastapi import APIRouter
from app.api.v1.endpoints import (
    admin_tickets,
    tickets,
    webhooks,
)

# This is the main router for the v1 API.
# It will include all the specific endpoint routers.
api_router = APIRouter()

api_router.include_router(tickets.router)
api_router.include_router(admin_tickets.router)
api_router.include_router(webhooks.router)
