"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.internal import router as internal_router
from app.api.routes.members import customers_router, router as members_router
from app.api.routes.notes import router as notes_router
from app.api.routes.orders import router as orders_router

router = APIRouter()

router.include_router(members_router, prefix="/v1/perch/members", tags=["Members"])
router.include_router(customers_router, prefix="/v1/perch/customers", tags=["Members"])
router.include_router(orders_router, prefix="/v1/perch/orders", tags=["Orders"])
router.include_router(notes_router, prefix="/v1/notes", tags=["Notes"])
router.include_router(internal_router, prefix="/v1/internal", tags=["Internal"])
