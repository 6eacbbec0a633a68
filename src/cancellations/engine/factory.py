"""Wire a WorkflowStateMachine to the configured collaborator services."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.commerce import HttpCommercePlatform
from core.config import EngineConfig, config
from core.notifications import HttpNotificationDispatcher
from core.refunds import HttpRefundProcessor

from .machine import EngineSettings, WorkflowStateMachine
from .store import WorkflowStore

logger = logging.getLogger(__name__)


def build_engine(
    cfg: Optional[EngineConfig] = None,
    *,
    store: Optional[WorkflowStore] = None,
    http_client: Optional[httpx.Client] = None,
) -> WorkflowStateMachine:
    """
    Build the production engine from environment configuration.

    The returned machine owns `http_client`; callers close it with
    `machine.http_client.close()` on shutdown.
    """
    cfg = cfg or config
    for issue in cfg.validate():
        logger.warning("Config: %s", issue)

    store = store or WorkflowStore(cfg.STATE_DB)
    client = http_client or httpx.Client(timeout=cfg.HTTP_TIMEOUT_SECONDS)

    dispatcher = HttpNotificationDispatcher(
        cfg.EMAIL_ROUTING_URL,
        api_key=cfg.EMAIL_ROUTING_API_KEY or None,
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
        client=client,
    )
    refunds = HttpRefundProcessor(
        cfg.COMMERCE_API_URL,
        api_key=cfg.COMMERCE_API_KEY or None,
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
        client=client,
    )
    commerce = None
    if cfg.COMMERCE_API_URL:
        commerce = HttpCommercePlatform(
            cfg.COMMERCE_API_URL,
            api_key=cfg.COMMERCE_API_KEY or None,
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
            client=client,
        )

    return WorkflowStateMachine(
        store,
        dispatcher=dispatcher,
        refunds=refunds,
        commerce=commerce,
        settings=EngineSettings.from_config(cfg),
        http_client=client,
    )
