"""
FastAPI routes for the creative production pipeline.

Session Endpoints:
  POST /sessions                                — Start a session
  GET  /sessions/{id}                           — Session state (step, selection, status)
  POST /sessions/{id}/brief                     — Step 1: set the product brief
  POST /sessions/{id}/mode                      — Switch video / image / pdp
  POST /sessions/{id}/concepts                  — Step 2: generate 3 concepts
  POST /sessions/{id}/concepts/{cid}/select     — Select a concept
  POST /sessions/{id}/concepts/{cid}/revise     — Edit a concept into a new one
  POST /sessions/{id}/visual                    — Step 3: main visual
  POST /sessions/{id}/aspect-ratio              — Change canvas (regenerates)
  POST /sessions/{id}/edit                      — Edit the active image
  POST /sessions/{id}/images/{iid}/activate     — Make a history image active
  POST /sessions/{id}/storyboard                — Confirm image → 4-shot storyboard
  POST /sessions/{id}/storyboard/{index}        — Regenerate one shot
  POST /sessions/{id}/video                     — Step 4: start video production
  GET  /sessions/{id}/video                     — Video job state
  DELETE /sessions/{id}/video                   — Cancel polling
  GET  /sessions/{id}/history                   — Lineage-filtered history

Library Endpoints:
  GET /library, POST /library, DELETE /library/{id},
  POST /library/{id}/pin, GET /library/export

Product Endpoints:
  GET /products, POST /products, POST /products/describe,
  POST /products/{id}/pin, DELETE /products/{id}
"""

import asyncio
import logging
from typing import Callable, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from ..config import GenerationConfig
from ..gemini import GeminiClient
from ..veo import VeoClient
from . import concepts as concept_gen
from .errors import GenerationError
from .library import AssetLibrary, ProductLibrary
from .models import (
    AspectRatioRequest,
    BriefRequest,
    ConfigUpdateRequest,
    DescribeProductRequest,
    EditRequest,
    ImageArtifact,
    MediaPayload,
    Mode,
    ModeRequest,
    ProductBrief,
    PromoteRequest,
    ReviseConceptRequest,
    ShotRegenRequest,
    VideoRequest,
)
from .orchestrator import CreativeSession
from .storage import MediaCache, StorageBackend

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "permission_denied": 403,
    "selection_error": 409,
    "cancelled": 409,
    "parse_failure": 422,
    "empty_result": 502,
    "provider_error": 502,
    "generation_error": 502,
    "timeout": 504,
}


# ═════════════════════════════════════════════════════════════════════════════
# Application state
# ═════════════════════════════════════════════════════════════════════════════

class AppState:
    """Process-wide config, persistent libraries and the live sessions."""

    def __init__(
        self,
        config: GenerationConfig,
        backend: StorageBackend,
        media_cache: MediaCache,
        gemini_factory: Callable[[GenerationConfig], GeminiClient] = GeminiClient,
        veo_factory: Callable[[GenerationConfig], VeoClient] = VeoClient,
    ):
        self.config = config
        self.asset_library = AssetLibrary(backend)
        self.product_library = ProductLibrary(backend)
        self.media_cache = media_cache
        self.gemini_factory = gemini_factory
        self.veo_factory = veo_factory
        self.sessions: dict[str, CreativeSession] = {}
        self._tasks: set[asyncio.Task] = set()

    def update_config(self, **changes) -> GenerationConfig:
        """Swap in a new config; calls already in flight keep the old one."""
        self.config = self.config.updated(**changes)
        logger.info(f"Config updated: {sorted(changes)}")
        return self.config

    def new_session(self) -> CreativeSession:
        session = CreativeSession(
            lambda: self.config,
            self.asset_library,
            self.product_library,
            self.media_cache,
            gemini_factory=self.gemini_factory,
            veo_factory=self.veo_factory,
        )
        self.sessions[session.id] = session
        return session

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _state(request: Request) -> AppState:
    return request.app.state.omnispark


def _session(request: Request, session_id: str) -> CreativeSession:
    session = _state(request).sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    """Map the failure taxonomy onto HTTP status codes."""
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 502),
        content={"kind": exc.kind, "message": exc.message, "next_action": exc.next_action},
    )


def _image_view(image: ImageArtifact) -> dict:
    view = image.model_dump(mode="json", exclude={"payload"})
    view["data_url"] = image.payload.to_data_url()
    return view


def _brief_from_request(state: AppState, body: BriefRequest) -> ProductBrief:
    if body.product_id:
        return state.product_library.apply(body.product_id, body.creative_direction or None)
    return ProductBrief(
        name=body.name,
        description=body.description,
        creative_direction=body.creative_direction,
        reference_images=tuple(MediaPayload.from_data_url(img) for img in body.images),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Session Router
# ═════════════════════════════════════════════════════════════════════════════

session_router = APIRouter(prefix="/sessions", tags=["sessions"])


@session_router.post("")
async def create_session(request: Request):
    session = _state(request).new_session()
    logger.info(f"Session {session.id} started")
    return session.view()


@session_router.get("/{session_id}")
async def get_session(session_id: str, request: Request):
    return _session(request, session_id).view()


# ── Step 1: Intake ───────────────────────────────────────────────────────────

@session_router.post("/{session_id}/brief")
async def set_brief(session_id: str, body: BriefRequest, request: Request):
    """
    Set the product brief (saved to the product library).

    Errors:
      - 400: Empty name/description, more than 4 images, bad image data
      - 404: Unknown product_id
    """
    session = _session(request, session_id)
    try:
        brief = _brief_from_request(_state(request), body)
    except KeyError:
        raise HTTPException(status_code=404, detail="Product not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session.set_brief(brief)
    return session.view()


@session_router.post("/{session_id}/mode")
async def set_mode(session_id: str, body: ModeRequest, request: Request):
    session = _session(request, session_id)
    session.set_mode(body.mode)
    return session.view()


# ── Step 2: Concepts ─────────────────────────────────────────────────────────

@session_router.post("/{session_id}/concepts")
async def generate_concepts(session_id: str, request: Request):
    session = _session(request, session_id)
    concepts = await session.generate_concepts()
    return {"concepts": [c.model_dump(mode="json") for c in concepts]}


@session_router.post("/{session_id}/concepts/{concept_id}/select")
async def select_concept(session_id: str, concept_id: str, request: Request):
    session = _session(request, session_id)
    session.select_concept(concept_id)
    return session.view()


@session_router.post("/{session_id}/concepts/{concept_id}/revise")
async def revise_concept(session_id: str, concept_id: str, body: ReviseConceptRequest, request: Request):
    session = _session(request, session_id)
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes")
    revised = session.revise_concept(concept_id, **changes)
    return revised.model_dump(mode="json")


# ── Step 3: Visuals ──────────────────────────────────────────────────────────

@session_router.post("/{session_id}/visual")
async def generate_visual(session_id: str, request: Request):
    session = _session(request, session_id)
    image = await session.generate_main_visual()
    return _image_view(image)


@session_router.post("/{session_id}/aspect-ratio")
async def change_aspect_ratio(session_id: str, body: AspectRatioRequest, request: Request):
    session = _session(request, session_id)
    image = await session.change_aspect_ratio(body.aspect_ratio)
    return {"aspect_ratio": session.aspect_ratio, "image": _image_view(image) if image else None}


@session_router.post("/{session_id}/edit")
async def edit_image(session_id: str, body: EditRequest, request: Request):
    session = _session(request, session_id)
    image = await session.edit_active_image(body.instruction)
    return _image_view(image)


@session_router.post("/{session_id}/images/{image_id}/activate")
async def activate_image(session_id: str, image_id: str, request: Request):
    session = _session(request, session_id)
    session.activate_image(image_id)
    return session.view()


@session_router.post("/{session_id}/storyboard")
async def generate_storyboard(session_id: str, request: Request):
    """Confirm the active image and render the 4-shot storyboard (partial results allowed)."""
    session = _session(request, session_id)
    result = await session.confirm_and_generate_storyboard()
    return {
        "shots": [
            {
                "index": s.index,
                "label": s.label,
                "instruction": s.instruction,
                "artifact_id": s.artifact_id,
                "data_url": s.payload.to_data_url(),
            }
            for s in result.shots
        ],
        "failed_labels": result.failed_labels,
        "failed_kinds": result.failed_kinds,
        "used_fallback": result.used_fallback,
    }


@session_router.post("/{session_id}/storyboard/{index}")
async def regenerate_shot(session_id: str, index: int, body: ShotRegenRequest, request: Request):
    session = _session(request, session_id)
    shot = await session.regenerate_shot(index, body.instruction)
    return {
        "index": shot.index,
        "label": shot.label,
        "instruction": shot.instruction,
        "artifact_id": shot.artifact_id,
        "data_url": shot.payload.to_data_url(),
    }


# ── Step 4: Production ───────────────────────────────────────────────────────

async def _produce_video(session: CreativeSession, cancel_event: asyncio.Event):
    try:
        await session.generate_video(cancel_event)
    except GenerationError as e:
        # Already recorded on session.status by the session boundary
        logger.info(f"[session {session.id}] video job ended with {e.kind}")
    except Exception as e:
        logger.error(f"[session {session.id}] video job crashed: {e}", exc_info=True)


@session_router.post("/{session_id}/video", status_code=202)
async def start_video(session_id: str, body: VideoRequest, request: Request):
    """
    Start video production in the background; poll GET for the job state.

    Errors:
      - 409: Not in video mode, no concept, 0 or more than 3 references,
             or a job already running
    """
    session = _session(request, session_id)
    if session.video_in_progress:
        raise HTTPException(status_code=409, detail="A video job is already running")
    if body.reference_ids:
        session.select_video_references(body.reference_ids)
    _, refs = session.check_video_ready()

    cancel_event = session.claim_video()
    _state(request).spawn(_produce_video(session, cancel_event))
    return {"status": "started", "reference_ids": [r.id for r in refs]}


@session_router.get("/{session_id}/video")
async def get_video(session_id: str, request: Request):
    session = _session(request, session_id)
    return {
        "job": session.video_job.model_dump(mode="json") if session.video_job else None,
        "status": session.status.model_dump(mode="json"),
        "candidates": [i.id for i in session.video_reference_candidates()],
        "selected": session.video_reference_ids,
    }


@session_router.delete("/{session_id}/video")
async def cancel_video(session_id: str, request: Request):
    session = _session(request, session_id)
    return {"cancelled": session.cancel_video()}


# ── History ──────────────────────────────────────────────────────────────────

@session_router.get("/{session_id}/history")
async def get_history(
    session_id: str,
    request: Request,
    mode: Optional[Mode] = None,
    concept_id: Optional[str] = None,
    product_name: Optional[str] = None,
):
    """
    History views. Concepts are filtered by mode (and product); images only
    when a concept is given, and then strictly by (concept, mode).
    """
    session = _session(request, session_id)
    history = session.history
    mode = mode or session.mode
    concept_id = concept_id or session.selected_concept_id

    images = history.images_for(concept_id, mode) if concept_id else []
    return {
        "mode": mode.value,
        "concept_groups": {
            key: [c.model_dump(mode="json") for c in group]
            for key, group in history.concept_groups(mode, product_name).items()
        },
        "images": [_image_view(i) for i in images],
        "videos": {
            key: [v.model_dump(mode="json") for v in group]
            for key, group in history.video_groups().items()
        },
        "sizes": history.sizes(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Library Router
# ═════════════════════════════════════════════════════════════════════════════

library_router = APIRouter(prefix="/library", tags=["library"])


@library_router.get("")
async def list_library(request: Request, mode: str = "all"):
    if mode != "all" and mode not in {m.value for m in Mode}:
        raise HTTPException(status_code=400, detail=f"Unknown mode: {mode}")
    assets = _state(request).asset_library.assets(mode)
    return [a.model_dump(mode="json") for a in assets]


@library_router.post("")
async def promote(body: PromoteRequest, request: Request):
    """Copy a history entry (or raw content) into the library."""
    state = _state(request)
    if body.artifact_id:
        session = _session(request, body.session_id or "")
        asset = session.promote_artifact(body.artifact_id)
    elif body.type is not None and body.content is not None:
        asset = state.asset_library.promote(body.type, body.content, body.meta)
    else:
        raise HTTPException(status_code=400, detail="Provide artifact_id or type + content")
    return asset.model_dump(mode="json")


@library_router.get("/export", response_class=PlainTextResponse)
async def export_library(request: Request, mode: str = "all"):
    if mode != "all" and mode not in {m.value for m in Mode}:
        raise HTTPException(status_code=400, detail=f"Unknown mode: {mode}")
    return _state(request).asset_library.export_markdown(mode)


@library_router.delete("/{asset_id}")
async def delete_asset(asset_id: str, request: Request):
    if not _state(request).asset_library.remove(asset_id):
        raise HTTPException(status_code=404, detail="Asset not found")
    return {"deleted": asset_id}


@library_router.post("/{asset_id}/pin")
async def pin_asset(asset_id: str, request: Request):
    asset = _state(request).asset_library.toggle_pin(asset_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset.model_dump(mode="json")


# ═════════════════════════════════════════════════════════════════════════════
# Product Router
# ═════════════════════════════════════════════════════════════════════════════

product_router = APIRouter(prefix="/products", tags=["products"])


@product_router.get("")
async def list_products(request: Request):
    return [r.model_dump(mode="json") for r in _state(request).product_library.records()]


@product_router.post("")
async def save_product(body: BriefRequest, request: Request):
    state = _state(request)
    try:
        brief = ProductBrief(
            name=body.name,
            description=body.description,
            creative_direction=body.creative_direction,
            reference_images=tuple(MediaPayload.from_data_url(img) for img in body.images),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return state.product_library.save(brief).model_dump(mode="json")


@product_router.post("/describe")
async def describe_product(body: DescribeProductRequest, request: Request):
    """AI-write a short product description from the name."""
    state = _state(request)
    client = state.gemini_factory(state.config)
    try:
        description = await concept_gen.describe_product(client, body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"description": description}


@product_router.post("/{product_id}/pin")
async def pin_product(product_id: str, request: Request):
    record = _state(request).product_library.toggle_pin(product_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return record.model_dump(mode="json")


@product_router.delete("/{product_id}")
async def delete_product(product_id: str, request: Request):
    if not _state(request).product_library.delete(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": product_id}


# ═════════════════════════════════════════════════════════════════════════════
# Config Router
# ═════════════════════════════════════════════════════════════════════════════

config_router = APIRouter(prefix="/config", tags=["config"])


@config_router.get("")
async def get_config(request: Request):
    return _state(request).config.public_view()


@config_router.put("")
async def update_config(body: ConfigUpdateRequest, request: Request):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes")
    return _state(request).update_config(**changes).public_view()
