from fastapi import APIRouter

from .endpoints import health, invitations, subscriptions, tasks, tokens

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(tasks.router)
router.include_router(tokens.router)
router.include_router(subscriptions.router)
router.include_router(invitations.router)
