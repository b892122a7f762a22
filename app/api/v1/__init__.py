"""API v1 routes aggregation"""

from fastapi import APIRouter

from .payments.router import router as payments_router
from .wallet.router import router as wallet_router
from .commissions.router import router as commissions_router

# Create v1 router
api_router = APIRouter()

# Include all routers
api_router.include_router(payments_router, prefix="/payments", tags=["Payments"])
api_router.include_router(wallet_router, prefix="/wallet", tags=["Wallet"])
api_router.include_router(commissions_router, prefix="/commissions", tags=["Commissions"])

# Export router
router = api_router
