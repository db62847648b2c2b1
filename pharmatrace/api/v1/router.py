from fastapi import APIRouter

from pharmatrace.api.v1.health import router as health_router
from pharmatrace.api.v1.participants import router as participants_router
from pharmatrace.api.v1.batches import router as batches_router
from pharmatrace.api.v1.actions import router as actions_router
from pharmatrace.api.v1.verify import router as verify_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM / CORE
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])

# ------------------------------------------------------------------
# MASTER DATA
# ------------------------------------------------------------------
v1_router.include_router(participants_router, tags=["participants"])
v1_router.include_router(batches_router, tags=["batches"])

# ------------------------------------------------------------------
# LIFECYCLE ACTIONS (build → sign → submit → confirm)
# ------------------------------------------------------------------
v1_router.include_router(actions_router, tags=["actions"])

# ------------------------------------------------------------------
# PUBLIC VERIFICATION
# ------------------------------------------------------------------
v1_router.include_router(verify_router, tags=["verify"])
