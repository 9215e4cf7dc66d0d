from fastapi import APIRouter
from settlement.api.v1.routes.checkout import router as checkout_router
from settlement.api.v1.routes.vouchers import router as vouchers_router
from settlement.api.v1.routes.bookings import router as bookings_router
from settlement.api.v1.routes.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(checkout_router)
api_router.include_router(vouchers_router)
api_router.include_router(bookings_router)
api_router.include_router(webhooks_router)
