from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from resuum.core.execution_boundary import (
    WorkerBusyError,
    WorkerError,
    WorkerOverloadedError,
)
from resuum.core.recommendation_engine import RecommendationError
from resuum.core.services import Services, build_services
from resuum.core.settings import Settings
from resuum.core.storage import NotFoundError

logger = logging.getLogger(__name__)

app = FastAPI(title="resuum")


# ==================== Request Models ====================


class RoleCreate(BaseModel):
    title: str = Field(..., min_length=1)
    company: str = ""
    bullets_limit: int = Field(default=3, ge=1, le=50)
    order_index: int | None = None
    start_date: str | None = None
    end_date: str | None = None


class RoleUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    company: str | None = None
    bullets_limit: int | None = Field(default=None, ge=1, le=50)
    order_index: int | None = None
    start_date: str | None = None
    end_date: str | None = None


class ProjectCreate(BaseModel):
    role_id: str
    name: str = Field(..., min_length=1)
    description: str = ""


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None


class BulletCreate(BaseModel):
    role_id: str
    project_id: str
    text: str = Field(..., min_length=1)


class BulletUpdate(BaseModel):
    text: str | None = None
    project_id: str | None = None


class RecommendationRequest(BaseModel):
    job_title: str = Field(..., min_length=1)
    job_description: str = Field(..., min_length=1)


# ==================== Lifecycle ====================


@app.on_event("startup")
async def _startup() -> None:
    # Tests install their own services before startup
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(Settings.from_env())
        await app.state.services.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.stop()
        app.state.services = None


def get_services(request: Request) -> Services:
    return request.app.state.services


# ==================== Error Mapping ====================


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(RecommendationError)
async def _recommendation_failed(request: Request, exc: RecommendationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(WorkerError)
async def _worker_failed(request: Request, exc: WorkerError) -> JSONResponse:
    status = 429 if isinstance(exc, (WorkerOverloadedError, WorkerBusyError)) else 503
    logger.warning(f"Worker error ({type(exc).__name__}): {exc}")
    return JSONResponse(status_code=status, content={"error": str(exc)})


# ==================== Library ====================


@app.get("/api/roles")
async def api_list_roles(request: Request):
    services = get_services(request)
    return {"roles": [r.to_dict() for r in await services.library.list_roles()]}


@app.post("/api/roles")
async def api_create_role(body: RoleCreate, request: Request):
    services = get_services(request)
    try:
        role = await services.library.create_role(
            title=body.title,
            company=body.company,
            bullets_limit=body.bullets_limit,
            order_index=body.order_index,
            start_date=body.start_date,
            end_date=body.end_date,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return role.to_dict()


@app.put("/api/roles/{role_id}")
async def api_update_role(role_id: str, body: RoleUpdate, request: Request):
    """Edit a role. Only the fields present in the body change."""
    services = get_services(request)
    try:
        role = await services.library.update_role(role_id, **body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return role.to_dict()


@app.delete("/api/roles/{role_id}")
async def api_delete_role(role_id: str, request: Request):
    """Delete a role together with its projects and bullets."""
    services = get_services(request)
    counts = await services.library.delete_role(role_id)
    return {"deleted": role_id, **counts}


@app.get("/api/projects")
async def api_list_projects(request: Request, role_id: str | None = None):
    services = get_services(request)
    return {"projects": [p.to_dict() for p in await services.library.list_projects(role_id)]}


@app.post("/api/projects")
async def api_create_project(body: ProjectCreate, request: Request):
    services = get_services(request)
    try:
        project = await services.library.create_project(body.role_id, body.name, body.description)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return project.to_dict()


@app.put("/api/projects/{project_id}")
async def api_update_project(project_id: str, body: ProjectUpdate, request: Request):
    services = get_services(request)
    try:
        project = await services.library.update_project(project_id, **body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return project.to_dict()


@app.delete("/api/projects/{project_id}")
async def api_delete_project(project_id: str, request: Request):
    services = get_services(request)
    return {"deleted": project_id, "bullets": await services.library.delete_project(project_id)}


@app.get("/api/bullets")
async def api_list_bullets(request: Request, role_id: str | None = None, project_id: str | None = None):
    services = get_services(request)
    bullets = await services.library.list_bullets(role_id=role_id, project_id=project_id)
    return {"bullets": [b.to_dict() for b in bullets]}


@app.post("/api/bullets")
async def api_create_bullet(body: BulletCreate, request: Request):
    """Create a bullet. It is queued for embedding at high priority."""
    services = get_services(request)
    try:
        bullet = await services.library.create_bullet(body.role_id, body.project_id, body.text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return bullet.to_dict()


@app.put("/api/bullets/{bullet_id}")
async def api_update_bullet(bullet_id: str, body: BulletUpdate, request: Request):
    """Edit a bullet. A text change marks the embedding stale and re-queues it."""
    services = get_services(request)
    try:
        bullet = await services.library.update_bullet(bullet_id, text=body.text, project_id=body.project_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return bullet.to_dict()


@app.delete("/api/bullets/{bullet_id}")
async def api_delete_bullet(bullet_id: str, request: Request):
    services = get_services(request)
    await services.library.delete_bullet(bullet_id)
    return {"deleted": bullet_id}


@app.get("/api/bullets/{bullet_id}/similar")
async def api_similar_bullets(bullet_id: str, request: Request, limit: int = Query(default=5, ge=1, le=50)):
    """Nearest bullets by embedding distance. Empty until the bullet is embedded."""
    services = get_services(request)
    await services.library.get_bullet(bullet_id)
    return {"bullet_id": bullet_id, "similar": services.db.find_similar_bullets(bullet_id, limit)}


@app.get("/api/library/export")
async def api_export_library(request: Request):
    return await get_services(request).library.export_library()


@app.post("/api/library/import")
async def api_import_library(request: Request, document: Any = Body(...)):
    """Add the records of an exported library. Existing ids are skipped."""
    services = get_services(request)
    try:
        return await services.library.import_library(document)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ==================== Recommendations ====================


@app.post("/api/recommendations")
async def api_recommendations(body: RecommendationRequest, request: Request):
    """Rank the library against a job posting.

    Runs inside the execution boundary; 'degraded' in the result is true when
    heuristic scoring replaced the remote scorer.
    """
    services = get_services(request)
    return await services.boundary.recommend(body.job_title, body.job_description)


# ==================== Embeddings ====================


@app.get("/api/embeddings/stats")
async def api_embedding_stats(request: Request):
    services = get_services(request)
    return {
        "library": services.db.get_stats(),
        "queue": await services.state.queue_stats(),
        "processor": await services.processor.get_stats(),
    }


@app.post("/api/embeddings/requeue-stale")
async def api_requeue_stale(request: Request):
    services = get_services(request)
    return {"requeued": await services.state.requeue_stale()}


@app.post("/api/embeddings/clear-failed")
async def api_clear_failed(request: Request):
    services = get_services(request)
    return {"cleared": await services.state.clear_failed_queue()}


@app.post("/api/embeddings/coalesce")
async def api_coalesce(request: Request):
    services = get_services(request)
    return {"removed": await services.state.coalesce()}


# ==================== Status ====================


@app.get("/api/worker/status")
async def api_worker_status(request: Request):
    return get_services(request).boundary.status()


@app.get("/api/providers/health")
async def api_providers_health(request: Request):
    """Check the embedding and chat providers.

    Useful to tell a missing API key apart from a provider outage.
    """
    services = get_services(request)
    results = [
        (await services.embedding_provider.health_check()).to_dict(),
        (await services.analysis_llm.health_check()).to_dict(),
    ]
    if services.scoring_llm.model_id != services.analysis_llm.model_id:
        results.append((await services.scoring_llm.health_check()).to_dict())
    return {"providers": results}
