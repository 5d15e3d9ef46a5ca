from fastapi import APIRouter

from app.api.routes import health, links, series, snapshots, sources, sync, templates

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sources.router, prefix="/admin/sources", tags=["sources"])
api_router.include_router(links.router, prefix="/admin/links", tags=["links"])
api_router.include_router(series.router, prefix="/admin/series", tags=["series"])
api_router.include_router(snapshots.router, prefix="/admin/snapshots", tags=["review"])
api_router.include_router(sync.router, prefix="/admin", tags=["sync"])
api_router.include_router(templates.router, prefix="/admin", tags=["rule-templates"])
