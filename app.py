# app.py — itemflow
# - Batch generation endpoint in front of the routing controller
# - Accepted items persisted to SQLite and fed back into the similarity store

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

import db
import rag
from config import OrchestratorConfig
from engines.errors import FallbackIntegrityFailure, InvalidRequest
from engines.routing import RoutingController, build_controller
from llm_backend import backend_from_env
from schemas import CandidateItem

logger = logging.getLogger(__name__)

_SEED_LIMIT = 500

_CONTROLLER: Optional[RoutingController] = None
_STORE: Optional[rag.SimilarityStore] = None


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        _ensure_controller()
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="itemflow", version="1.0.0", lifespan=_lifespan)


def _persist_item(item: CandidateItem) -> int:
    row_id = db.save_item(item)
    if isinstance(_STORE, rag.InMemorySimilarityStore):
        _STORE.add(
            str(row_id),
            item.question_text,
            item.answer,
            {"grade": item.grade_level, "topic": item.category, "difficulty": item.difficulty},
        )
    return row_id


def _ensure_controller(force: bool = False) -> RoutingController:
    global _CONTROLLER, _STORE
    if _CONTROLLER is not None and not force:
        return _CONTROLLER

    config = OrchestratorConfig.from_env()
    store = rag.store_from_env()
    if isinstance(store, rag.InMemorySimilarityStore):
        try:
            seeded = store.add_rows(db.list_items(limit=_SEED_LIMIT))
            logger.info("Seeded in-memory similarity store with %s accepted items", seeded)
        except sqlite3.Error as exc:
            logger.warning("Could not seed similarity store from %s: %s", db.DB_PATH, exc)
    _STORE = store
    _CONTROLLER = build_controller(config, backend=backend_from_env(), store=store, persist=_persist_item)
    logger.info(
        "Routing controller ready: max_retries=%s workers=%s timeout=%sms enhance=%s",
        config.max_retries,
        config.worker_pool_size,
        config.per_stage_timeout_ms,
        config.enhancement_enabled,
    )
    return _CONTROLLER


@app.post("/items/generate")
async def generate_items(body: Dict[str, Any] = Body(...)):
    controller = _ensure_controller()
    try:
        result = await controller.generate_batch(body)
    except InvalidRequest as exc:
        return JSONResponse(status_code=422, content={"error": exc.to_dict()})
    except FallbackIntegrityFailure as exc:
        logger.error("Fallback templates are broken: %s", exc.message)
        return JSONResponse(status_code=500, content={"error": exc.to_dict()})
    return result.model_dump(mode="json")


@app.get("/items")
def list_items(
    category: Optional[str] = None,
    grade_level: Optional[int] = Query(default=None, ge=1, le=12),
    difficulty: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    try:
        items = db.list_items(category=category, grade_level=grade_level, difficulty=difficulty, limit=limit)
        total = db.count_items(category=category, grade_level=grade_level, difficulty=difficulty)
    except sqlite3.Error as exc:
        logger.error("Listing items failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read accepted items") from exc
    return {"count": total, "items": items}


@app.get("/health")
def health():
    controller = _ensure_controller()
    store = controller.retriever.store
    try:
        stored = db.count_items()
        database = "ok"
    except sqlite3.Error as exc:
        logger.warning("Health check could not read %s: %s", db.DB_PATH, exc)
        stored = None
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "accepted_items": stored,
        "generator": type(controller.generator.backend).__name__,
        "similarity_store": type(store).__name__ if store is not None else None,
        "max_retries": controller.config.max_retries,
    }
