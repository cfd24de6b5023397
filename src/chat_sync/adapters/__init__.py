from __future__ import annotations

import logging

from chat_sync.adapters.memory_adapter import InMemoryChatGateway
from chat_sync.adapters.rest_adapter import ChatRESTGateway
from chat_sync.config import SyncSettings
from chat_sync.interfaces.protocols import ConversationGateway

logger = logging.getLogger(__name__)


def get_gateway(settings: SyncSettings) -> ConversationGateway:
    """Real REST gateway when a base URL is configured, in-memory otherwise."""

    if settings.base_url:
        logger.info(
            "Initialising chat REST gateway base_url=%s env=%s",
            settings.base_url,
            settings.env,
        )
        return ChatRESTGateway(
            settings.base_url,
            settings.api_token,
            api_prefix=settings.api_prefix,
            pagination=settings.pagination,
            timeout=settings.request_timeout,
        )
    if settings.env == "production":
        raise RuntimeError("CHAT_SYNC_BASE_URL must be set in production")

    logger.info("Initialising in-memory chat gateway for env=%s", settings.env)
    return InMemoryChatGateway(viewer_id=settings.viewer_id or "me")


__all__ = ["ChatRESTGateway", "InMemoryChatGateway", "get_gateway"]
