"""
Main API router that includes all route modules.
"""
from fastapi import APIRouter
from app.api.routes import (
    auth, users, events, payments, settlements, receipts, ws
)

api_router = APIRouter()

# Include all route modules
api_router.include_router(auth.router)
api_router.include_router(users.router)
api_router.include_router(events.router)
api_router.include_router(payments.router)
api_router.include_router(settlements.router)
api_router.include_router(receipts.router)
api_router.include_router(ws.router)
