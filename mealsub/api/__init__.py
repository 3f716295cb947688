"""
API routes and endpoints.
"""

from fastapi import APIRouter
from .v1 import admin, monthly_subscriptions, subscriptions, vendors

api_router = APIRouter()

# 包含所有v1路由
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["订阅"])
api_router.include_router(monthly_subscriptions.router, prefix="/monthly-subscriptions", tags=["月度订阅"])
api_router.include_router(vendors.router, prefix="/vendors", tags=["商家"])
api_router.include_router(admin.router, prefix="/admin", tags=["管理"])
