from fastapi import APIRouter
from hemobank.api.v1.endpoints import blood_units, blood_requests, transfers, notifications, donors, monitor

api_router = APIRouter()

api_router.include_router(blood_units.router, prefix="/blood-units", tags=["blood-units"])
api_router.include_router(blood_requests.router, prefix="/blood-requests", tags=["blood-requests"])
api_router.include_router(transfers.router, prefix="/transfers", tags=["transfers"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(donors.router, prefix="/donors", tags=["donors"])
api_router.include_router(monitor.router, prefix="/monitor", tags=["monitor"])
