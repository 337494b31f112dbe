from fastapi import APIRouter

from checkin.api.v1.endpoints import accounts, scan_login
from checkin.core.config import settings

api_router = APIRouter(prefix=settings.API_V1_PREFIX)
api_router.include_router(accounts.router, tags=["accounts"])
api_router.include_router(scan_login.router, tags=["scan-login"])
