"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter

from gatepass.api.routes import admin, guest, register, scan, tickets

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(register.router)
api_router.include_router(guest.router)
api_router.include_router(tickets.router)
api_router.include_router(scan.router)
api_router.include_router(admin.router)
