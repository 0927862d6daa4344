from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Affiliate self-service
    affiliates,
    # Vendor program management
    vendor_affiliates,
    # Platform administration
    admin_affiliates,
    # Order / payment collaborator signals
    webhooks,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Affiliates ====================
api_router.include_router(
    affiliates.router,
    tags=["Affiliates"]
)

# ==================== Vendor Affiliate Management ====================
api_router.include_router(
    vendor_affiliates.router,
    tags=["Vendor Affiliates"]
)

# ==================== Admin ====================
api_router.include_router(
    admin_affiliates.router,
    tags=["Admin Affiliates"]
)

# ==================== Webhooks ====================
api_router.include_router(
    webhooks.router,
    tags=["Webhooks"]
)
