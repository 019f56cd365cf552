"""
api/routes/config.py

GET /api/config/webhook  - current alert destination (null when unset)
PUT /api/config/webhook  - set or clear it; takes effect on the next alert

Stored in the config table rather than in memory so every engine instance's
dispatcher sees the same destination.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import WebhookConfig

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/config", tags=["config"])


@router.get("/webhook", response_model=WebhookConfig)
async def read_webhook(
    _actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> WebhookConfig:
    return WebhookConfig(url=admin.get_webhook_url())


@router.put("/webhook", response_model=WebhookConfig)
async def update_webhook(
    body: WebhookConfig,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> WebhookConfig:
    url = (body.url or "").strip() or None
    if url is not None and not url.startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="webhook url must be http(s)")
    admin.set_webhook_url(actor, url)
    return WebhookConfig(url=url)
