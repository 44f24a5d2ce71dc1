from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from ...discovery import DiscoveryComposer
from ...discovery.types import DiscoveryContext
from ...logging_config import get_logger
from ...schemas import DiscoveryRequest, DiscoveryResponse, DiscoveryStatus
from ...settings import settings
from ...utils import client_identifier

router = APIRouter(prefix="/discovery", tags=["discovery"])
logger = get_logger(__name__)


def get_composer(request: Request) -> DiscoveryComposer:
    composer = getattr(request.app.state, "composer", None)
    if composer is None:
        raise HTTPException(status_code=503, detail="Discovery engine not initialised")
    return composer


@router.post("/query", response_model=DiscoveryResponse)
async def discovery_query(
    payload: DiscoveryRequest,
    request: Request,
    composer: DiscoveryComposer = Depends(get_composer),
) -> DiscoveryResponse:
    limit = settings.CONVERSATION_HISTORY_LIMIT
    history = payload.context.conversation_history
    context = DiscoveryContext(
        user_location=payload.context.user_location,
        conversation_history=history[-limit:] if limit > 0 else [],
        search_context=payload.context.search_context,
        authenticated=payload.context.authenticated,
        user_id=payload.context.user_id,
        ip=client_identifier(request),
    )
    response = await composer.compose(payload.query, context)
    logger.info(
        "discovery_query",
        state=response.metadata.get("state"),
        provider=response.metadata.get("provider"),
        recommendations=len(response.recommendations),
    )
    return response


@router.get("/status", response_model=DiscoveryStatus)
async def discovery_status(composer: DiscoveryComposer = Depends(get_composer)) -> DiscoveryStatus:
    providers = composer.registry.status() if composer.registry is not None else {}
    catalog = composer.catalog.status()
    active = providers.get("active_provider", "fallback")
    return DiscoveryStatus(
        status="operational" if catalog["catalog_size"] > 0 else "degraded",
        active_provider=active,
        providers=providers.get("providers", {}),
        registered=providers.get("registered", []),
        security=composer.security.security_stats(),
        **catalog,
    )


@router.post("/providers/refresh", response_model=DiscoveryStatus)
async def refresh_providers(composer: DiscoveryComposer = Depends(get_composer)) -> DiscoveryStatus:
    if composer.registry is None:
        raise HTTPException(status_code=409, detail="No provider registry configured")
    winner = await composer.registry.refresh()
    logger.info("providers_refreshed", active=winner.name if winner else "fallback")
    return await discovery_status(composer)
