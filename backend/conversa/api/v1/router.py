from fastapi import APIRouter

from conversa.api.v1.endpoints import (
    contacts,
    conversations,
    erp,
    notifications,
    protocols,
    transfers,
    webhooks,
)

api_v1_router = APIRouter()

api_v1_router.include_router(conversations.router, prefix="/conversations", tags=["conversations"])
api_v1_router.include_router(transfers.router, prefix="/transfers", tags=["transfers"])
api_v1_router.include_router(contacts.router, prefix="/contacts", tags=["contacts"])
api_v1_router.include_router(protocols.router, prefix="/protocols", tags=["protocols"])
api_v1_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_v1_router.include_router(erp.router, prefix="/erp", tags=["erp"])
api_v1_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
