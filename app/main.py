"""
Dashboard Cache Service - Main FastAPI Application
Exposes cache health, stats, invalidation and warm-up over HTTP.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from app.backend_client import BackendClient
from app.cache import CacheRegistry, UnknownDomainError, create_registry
from app.cached_services import CachedServices

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Dashboard Cache"
APP_STAGE = "Beta"

logger = logging.getLogger("main")


class InvalidateRequest(BaseModel):
    """Request body for /cache/invalidate. Nothing set means everything."""
    domain: Optional[str] = None
    tags: Optional[List[str]] = None
    data_type: Optional[str] = None


def create_app(
    registry: Optional[CacheRegistry] = None,
    services: Optional[CachedServices] = None,
) -> FastAPI:
    """
    Build the application.

    A registry passed in is used as-is and left running on shutdown;
    otherwise one is built from settings and destroyed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = registry is None
        app.state.registry = registry or create_registry()
        app.state.services = services or CachedServices(app.state.registry, BackendClient())
        try:
            yield
        finally:
            if owned:
                app.state.registry.destroy()
                logger.info("Cache registry destroyed")

    app = FastAPI(
        title=f"{APP_NAME} ({APP_STAGE})",
        description="Per-domain caching for the admin and client dashboards",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "ok",
            "domains": [d.value for d in request.app.state.registry.domains],
        }

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "stage": APP_STAGE,
            "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})",
        }

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics for every domain."""
        return request.app.state.registry.get_stats()

    @app.post("/cache/invalidate")
    def invalidate(body: InvalidateRequest, request: Request):
        """
        Invalidate cache entries.

        - data_type: smart invalidation ("client", "user", "financial", ...)
        - tags: clear tagged entries, limited to domain when given
        - domain alone: clear that domain's store
        - nothing: clear every store
        """
        registry: CacheRegistry = request.app.state.registry
        try:
            if body.data_type:
                removed = registry.smart_invalidate(body.data_type)
            elif body.tags:
                domains = [body.domain] if body.domain else None
                removed = registry.clear_by_tags(body.tags, domains=domains)
            elif body.domain:
                removed = registry.invalidate_by_domain(body.domain)
            else:
                removed = registry.invalidate_all()
        except UnknownDomainError:
            raise HTTPException(status_code=404, detail=f"Unknown cache domain: {body.domain}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"removed": removed}

    @app.delete("/cache/{domain}/keys/{key:path}")
    def delete_key(domain: str, key: str, request: Request):
        """Delete one entry. Invalidation callbacks fire; dependents are kept."""
        try:
            store = request.app.state.registry.store(domain)
        except UnknownDomainError:
            raise HTTPException(status_code=404, detail=f"Unknown cache domain: {domain}")
        return {"key": key, "deleted": store.delete(key)}

    @app.get("/cache/warm")
    def warm_strategies(request: Request):
        """List the registered warm-up strategies."""
        return {"strategies": request.app.state.services.warmer.strategies}

    @app.post("/cache/warm/{strategy}")
    def warm_up(strategy: str, request: Request):
        """Run a warm-up strategy. Failures are reported, not raised."""
        warmer = request.app.state.services.warmer
        if strategy not in warmer.strategies:
            raise HTTPException(status_code=404, detail=f"Unknown warm-up strategy: {strategy}")
        return {"strategy": strategy, "ok": warmer.warm_up(strategy)}

    return app


app = create_app()
