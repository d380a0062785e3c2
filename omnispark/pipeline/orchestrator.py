"""
CreativeSession — the production flow for one user session.

Chains the generation components with status tracking, full asyncio support:
  Step 1: Product intake (brief → product library)
  Step 2: Concept ideation (Gemini text, 3 concepts)
  Step 3: Visual design (main visual, edits, 4-shot storyboard)
  Step 4: Production (Veo video, video mode only)

Every artifact produced is handed to the `on_artifact_created` subscribers
(History first) before the session touches its own selection state. The
session is the error boundary: a GenerationError becomes a StatusMessage with
a next action, is logged, and is re-raised for the HTTP layer.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..config import GenerationConfig
from ..credentials import ConfigCredentialBroker, CredentialBroker
from ..gemini import GeminiClient
from ..presets import allowed_aspect_ratios, default_aspect_ratio
from ..veo import MAX_REFERENCE_IMAGES, VeoClient
from . import concepts as concept_gen
from . import storyboard as storyboard_gen
from .animate import VideoSynthesizer
from .errors import (
    REAUTHENTICATE,
    RETRY,
    GenerationError,
    PermissionDeniedError,
    SelectionError,
)
from .history import HistoryStore
from .library import AssetLibrary, ProductLibrary
from .models import (
    AssetType,
    Concept,
    ImageArtifact,
    LibraryAsset,
    LibraryMeta,
    MediaPayload,
    Mode,
    ProductBrief,
    StatusMessage,
    StoryboardResult,
    StoryboardShot,
    VideoArtifact,
    VideoJob,
    new_id,
)
from .scene_gen import edit_scene, generate_scene
from .storage import MediaCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

ArtifactListener = Callable[[Any], None]
PromotedListener = Callable[[LibraryAsset], None]


class CreativeSession:
    """
    Usage:
        session = CreativeSession(lambda: config, assets, products, media_cache)
        session.set_brief(brief)
        concepts = await session.generate_concepts()
        session.select_concept(concepts[0].id)
        await session.generate_main_visual()
        await session.confirm_and_generate_storyboard()
        job = await session.generate_video()
    """

    def __init__(
        self,
        config_getter: Callable[[], GenerationConfig],
        asset_library: AssetLibrary,
        product_library: ProductLibrary,
        media_cache: MediaCache,
        broker: Optional[CredentialBroker] = None,
        gemini_factory: Callable[[GenerationConfig], GeminiClient] = GeminiClient,
        veo_factory: Callable[[GenerationConfig], VeoClient] = VeoClient,
    ):
        self.id = new_id()
        self._config_getter = config_getter
        self.asset_library = asset_library
        self.product_library = product_library
        self.media_cache = media_cache
        self.broker = broker or ConfigCredentialBroker(lambda: self.config, "video")
        self._gemini_factory = gemini_factory
        self._veo_factory = veo_factory

        self.history = HistoryStore()
        self._listeners: list[ArtifactListener] = [self.history.record]
        self._promoted_listeners: list[PromotedListener] = []

        self.mode = Mode.VIDEO
        self.brief: Optional[ProductBrief] = None
        self.selected_concept_id: Optional[str] = None
        self.active_image_id: Optional[str] = None
        self.aspect_ratio = default_aspect_ratio(self.mode)

        self.storyboard: list[StoryboardShot] = []
        self.storyboard_result: Optional[StoryboardResult] = None
        self._storyboard_base: Optional[MediaPayload] = None

        self.video_reference_ids: list[str] = []
        self.video_job: Optional[VideoJob] = None
        self._video_cancel: Optional[asyncio.Event] = None

        self.status = StatusMessage()

    @property
    def config(self) -> GenerationConfig:
        return self._config_getter()

    # ── Events ───────────────────────────────────────────────────────────

    def subscribe(self, listener: ArtifactListener) -> Callable[[], None]:
        """Register an `on_artifact_created` listener; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_promoted(self, listener: PromotedListener):
        self._promoted_listeners.append(listener)

    def _emit(self, artifact: Any):
        for listener in list(self._listeners):
            listener(artifact)

    def _set_status(self, message: str, kind: str = "info", next_action: Optional[str] = None):
        self.status = StatusMessage(kind=kind, message=message, next_action=next_action)
        logger.info(f"[session {self.id}] {kind}: {message}")

    async def _run(self, step: str, work: Awaitable[T]) -> T:
        """Error boundary around one user action."""
        self._set_status(f"{step}...", kind="working")
        try:
            result = await work
        except GenerationError as e:
            logger.error(f"[session {self.id}] {step} failed: {e.message}", exc_info=True)
            self.status = StatusMessage(kind=e.kind, message=e.message, next_action=e.next_action)
            raise
        except Exception as e:
            logger.error(f"[session {self.id}] {step} failed unexpectedly: {e}", exc_info=True)
            self.status = StatusMessage(kind=GenerationError.kind, message=str(e), next_action=RETRY)
            raise
        return result

    # ── Selection state ──────────────────────────────────────────────────

    @property
    def selected_concept(self) -> Optional[Concept]:
        if self.selected_concept_id is None:
            return None
        return self.history.get_concept(self.selected_concept_id)

    @property
    def active_image(self) -> Optional[ImageArtifact]:
        if self.active_image_id is None:
            return None
        return self.history.get_image(self.active_image_id)

    def _clear_downstream(self):
        self.active_image_id = None
        self.storyboard = []
        self.storyboard_result = None
        self._storyboard_base = None
        self.video_reference_ids = []

    def _require_concept(self) -> Concept:
        concept = self.selected_concept
        if concept is None:
            raise SelectionError("Select a concept first.")
        return concept

    def _require_active_image(self) -> ImageArtifact:
        image = self.active_image
        if image is None:
            raise SelectionError("No active image. Generate or pick a visual first.")
        return image

    def _primary_reference(self) -> Optional[MediaPayload]:
        return self.brief.primary_image if self.brief else None

    def set_brief(self, brief: ProductBrief):
        """Step 1. The brief is remembered in the product library."""
        self.brief = brief
        self.selected_concept_id = None
        self._clear_downstream()
        self.product_library.save(brief)
        self._set_status(f"Brief set for '{brief.name}'")

    def set_mode(self, mode: Mode):
        """
        Switch mode. Mode-scoped selections (concept, active image, storyboard,
        video references) are cleared; brief and history are kept.
        """
        mode = Mode(mode)
        if mode != self.mode:
            logger.info(f"[session {self.id}] mode {self.mode.value} → {mode.value}")
        self.mode = mode
        self.selected_concept_id = None
        self._clear_downstream()
        self.aspect_ratio = default_aspect_ratio(mode)

    def select_concept(self, concept_id: str) -> Concept:
        concept = self.history.get_concept(concept_id)
        if concept is None:
            raise SelectionError(f"Unknown concept {concept_id}")
        if concept.mode != self.mode:
            raise SelectionError(f"Concept belongs to {concept.mode.value} mode, session is in {self.mode.value}")

        self.selected_concept_id = concept.id
        self._clear_downstream()
        # Pick up where the user left off with this concept
        existing = self.history.images_for(concept.id, self.mode)
        if existing:
            self.active_image_id = existing[0].id
        return concept

    def activate_image(self, image_id: str) -> ImageArtifact:
        concept = self._require_concept()
        candidates = {i.id: i for i in self.history.images_for(concept.id, self.mode)}
        if image_id not in candidates:
            raise SelectionError("Image does not belong to the selected concept and mode.")
        self.active_image_id = image_id
        return candidates[image_id]

    def _adopt_image(self, artifact: ImageArtifact):
        """Make a freshly generated image active, unless the selection moved on meanwhile."""
        if self.selected_concept_id == artifact.concept_id and self.mode == artifact.mode:
            self.active_image_id = artifact.id

    # ── Step 2: Concepts ─────────────────────────────────────────────────

    async def generate_concepts(self) -> list[Concept]:
        return await self._run("Generating concepts", self._generate_concepts())

    async def _generate_concepts(self) -> list[Concept]:
        if self.brief is None:
            raise SelectionError("Set a product brief first.")
        brief, mode = self.brief, self.mode
        client = self._gemini_factory(self.config)

        concepts = await concept_gen.generate_concepts(client, brief, mode)
        self._emit(concepts)
        self._set_status(f"Generated {len(concepts)} concepts")
        return concepts

    def revise_concept(self, concept_id: str, **changes: Any) -> Concept:
        """User edits to a concept land in history as a new concept; the original stays."""
        concept = self.history.get_concept(concept_id)
        if concept is None:
            raise SelectionError(f"Unknown concept {concept_id}")
        editable = {"title", "description", "script", "storyboard", "visual_prompt"}
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        revised = concept.revised(**changes)
        self._emit(revised)
        return revised

    # ── Step 3: Visuals ──────────────────────────────────────────────────

    async def generate_main_visual(self) -> ImageArtifact:
        return await self._run("Generating main visual", self._generate_main_visual())

    async def _generate_main_visual(self) -> ImageArtifact:
        concept = self._require_concept()
        mode, aspect_ratio = self.mode, self.aspect_ratio
        refs = self.brief.reference_images if self.brief else ()
        client = self._gemini_factory(self.config)

        payload = await generate_scene(client, concept.visual_prompt, refs, aspect_ratio)
        artifact = ImageArtifact.for_concept(concept, payload, concept.visual_prompt, mode)
        self._emit(artifact)
        self._adopt_image(artifact)
        self._set_status("Main visual ready")
        return artifact

    async def change_aspect_ratio(self, aspect_ratio: str) -> Optional[ImageArtifact]:
        """Aspect ratio is generation input: changing it regenerates the main visual."""
        allowed = allowed_aspect_ratios(self.mode)
        if aspect_ratio not in allowed:
            raise SelectionError(f"Aspect ratio {aspect_ratio} not available in {self.mode.value} mode: {allowed}")
        self.aspect_ratio = aspect_ratio
        if self.selected_concept is None:
            return None
        return await self.generate_main_visual()

    async def edit_active_image(self, instruction: str) -> ImageArtifact:
        return await self._run("Editing image", self._edit_active_image(instruction))

    async def _edit_active_image(self, instruction: str) -> ImageArtifact:
        base = self._require_active_image()
        concept = self._require_concept()
        client = self._gemini_factory(self.config)

        payload = await edit_scene(client, base.payload, instruction, self._primary_reference(), self.aspect_ratio)
        artifact = ImageArtifact.for_concept(concept, payload, f"Edit: {instruction}", base.mode)
        self._emit(artifact)
        self._adopt_image(artifact)
        self._set_status("Edit applied")
        return artifact

    async def confirm_and_generate_storyboard(self) -> StoryboardResult:
        return await self._run("Generating storyboard", self._generate_storyboard())

    async def _generate_storyboard(self) -> StoryboardResult:
        base = self._require_active_image()
        concept = self._require_concept()
        mode = self.mode
        client = self._gemini_factory(self.config)

        def on_rendered(shot: StoryboardShot):
            artifact = ImageArtifact.for_concept(concept, shot.payload, f"Storyboard: {shot.label}", mode)
            shot.artifact_id = artifact.id
            self._emit(artifact)

        result = await storyboard_gen.decompose(
            client,
            base.payload,
            concept.storyboard,
            mode,
            reference_image=self._primary_reference(),
            aspect_ratio=self.aspect_ratio,
            on_rendered=on_rendered,
        )

        if self.selected_concept_id == concept.id:
            self.storyboard = list(result.shots)
            self.storyboard_result = result
            self._storyboard_base = base.payload

        if result.partial:
            denied = PermissionDeniedError.kind in result.failed_kinds
            self._set_status(
                f"Storyboard ready with {len(result.shots)} of {storyboard_gen.SHOT_COUNT} shots; "
                f"failed: {', '.join(result.failed_labels)}",
                kind="partial",
                next_action=REAUTHENTICATE if denied else RETRY,
            )
        else:
            self._set_status("Storyboard ready")
        return result

    async def regenerate_shot(self, index: int, instruction: Optional[str] = None) -> StoryboardShot:
        return await self._run("Regenerating shot", self._regenerate_shot(index, instruction))

    async def _regenerate_shot(self, index: int, instruction: Optional[str]) -> StoryboardShot:
        if not 0 <= index < len(self.storyboard) or self._storyboard_base is None:
            raise SelectionError(f"No storyboard shot at position {index}.")
        concept = self._require_concept()
        old = self.storyboard[index]
        instruction = instruction or old.instruction
        mode = self.mode
        client = self._gemini_factory(self.config)

        payload = await edit_scene(
            client, self._storyboard_base, instruction, self._primary_reference(), self.aspect_ratio
        )
        artifact = ImageArtifact.for_concept(concept, payload, f"Regen Storyboard: {old.label}", mode)
        self._emit(artifact)

        shot = StoryboardShot(
            index=old.index,
            label=old.label,
            instruction=instruction,
            payload=payload,
            artifact_id=artifact.id,
        )
        if index < len(self.storyboard) and self.storyboard[index] is old:
            self.storyboard[index] = shot
        self._set_status(f"Shot '{old.label}' regenerated")
        return shot

    # ── Step 4: Production ───────────────────────────────────────────────

    def video_reference_candidates(self) -> list[ImageArtifact]:
        concept = self.selected_concept
        if concept is None:
            return []
        return self.history.images_for(concept.id, Mode.VIDEO)

    def select_video_references(self, image_ids: list[str]) -> list[ImageArtifact]:
        if not image_ids:
            raise SelectionError("Select at least one reference image.")
        if len(image_ids) > MAX_REFERENCE_IMAGES:
            raise SelectionError(f"Select at most {MAX_REFERENCE_IMAGES} reference images.")
        candidates = {i.id: i for i in self.video_reference_candidates()}
        unknown = [i for i in image_ids if i not in candidates]
        if unknown:
            raise SelectionError(f"Not valid references for this concept: {unknown}")
        self.video_reference_ids = list(dict.fromkeys(image_ids))
        return [candidates[i] for i in self.video_reference_ids]

    def _resolve_video_references(self) -> list[ImageArtifact]:
        candidates = self.video_reference_candidates()
        if self.video_reference_ids:
            by_id = {i.id: i for i in candidates}
            return [by_id[i] for i in self.video_reference_ids if i in by_id]
        # Default: the newest video-mode image of the concept
        return candidates[:1]

    def _on_video_state(self, job: VideoJob):
        self.video_job = job

    async def generate_video(self, cancel_event: Optional[asyncio.Event] = None) -> VideoJob:
        """Run one video job; pass the event from `claim_video` when the slot was reserved up front."""
        return await self._run("Generating video", self._generate_video(cancel_event))

    def check_video_ready(self) -> tuple[Concept, list[ImageArtifact]]:
        """Local preconditions for production; raises SelectionError."""
        if self.mode != Mode.VIDEO:
            raise SelectionError("Video production is only available in video mode.")
        concept = self._require_concept()
        refs = self._resolve_video_references()
        if not refs:
            raise SelectionError("Select at least one reference image.")
        return concept, refs

    @property
    def video_in_progress(self) -> bool:
        return self._video_cancel is not None

    def claim_video(self) -> asyncio.Event:
        """Reserve the production slot; the returned event cancels the job."""
        if self._video_cancel is not None:
            raise SelectionError("A video job is already running.")
        self._video_cancel = asyncio.Event()
        return self._video_cancel

    async def _generate_video(self, cancel_event: Optional[asyncio.Event]) -> VideoJob:
        if cancel_event is None:
            cancel_event = self.claim_video()
        try:
            concept, refs = self.check_video_ready()

            if not await self.broker.has_credential():
                if not await self.broker.request_credential():
                    raise PermissionDeniedError("No video credential is available. Select an API key first.")

            config = self.config
            synth = VideoSynthesizer(
                config,
                self.media_cache,
                client=self._veo_factory(config),
                on_state=self._on_video_state,
            )
            self.video_job = synth.job
            job = await synth.run(concept.script, [r.payload for r in refs], cancel_event)
        except PermissionDeniedError:
            if isinstance(self.broker, ConfigCredentialBroker):
                self.broker.invalidate()
            raise
        finally:
            self._video_cancel = None

        video = VideoArtifact(
            uri=job.video_uri,
            local_url=job.local_url,
            product_name=concept.product_name,
            creative_direction=concept.creative_direction,
            concept_title=concept.title,
        )
        self._emit(video)
        self._set_status("Video ready")
        return job

    def cancel_video(self) -> bool:
        if self._video_cancel is None:
            return False
        self._video_cancel.set()
        return True

    # ── Library ──────────────────────────────────────────────────────────

    def promote(self, asset_type: AssetType, content: Any, meta: Optional[LibraryMeta] = None) -> LibraryAsset:
        asset = self.asset_library.promote(asset_type, content, meta)
        for listener in list(self._promoted_listeners):
            listener(asset)
        return asset

    def promote_artifact(self, artifact_id: str) -> LibraryAsset:
        """Promote a History entry by id, carrying its lineage into the library."""
        concept = self.history.get_concept(artifact_id)
        if concept is not None:
            meta = LibraryMeta(
                title=concept.title,
                mode=concept.mode,
                product_name=concept.product_name,
                concept_title=concept.title,
            )
            return self.promote(AssetType.CONCEPT, concept, meta)

        image = self.history.get_image(artifact_id)
        if image is not None:
            meta = LibraryMeta(
                title=image.concept_title,
                prompt=image.prompt,
                mode=image.mode,
                product_name=image.product_name,
                concept_title=image.concept_title,
            )
            return self.promote(AssetType.IMAGE, image.payload, meta)

        video = next((v for v in self.history.videos if v.id == artifact_id), None)
        if video is not None:
            meta = LibraryMeta(
                title=video.concept_title,
                mode=video.mode,
                product_name=video.product_name,
                concept_title=video.concept_title,
            )
            return self.promote(AssetType.VIDEO, video.local_url, meta)

        raise SelectionError(f"No history entry {artifact_id}")

    # ── Views ────────────────────────────────────────────────────────────

    def visible_steps(self) -> list[int]:
        return [1, 2, 3, 4] if self.mode == Mode.VIDEO else [1, 2, 3]

    @property
    def current_step(self) -> int:
        if self.brief is None:
            return 1
        if self.selected_concept is None:
            return 2
        if self.mode == Mode.VIDEO and self.active_image is not None and self.storyboard:
            return 4
        return 3

    def view(self) -> dict:
        concept = self.selected_concept
        return {
            "id": self.id,
            "mode": self.mode.value,
            "step": self.current_step,
            "visible_steps": self.visible_steps(),
            "product_name": self.brief.name if self.brief else None,
            "selected_concept": concept.model_dump(mode="json") if concept else None,
            "active_image_id": self.active_image_id,
            "aspect_ratio": self.aspect_ratio,
            "storyboard": [
                {"index": s.index, "label": s.label, "instruction": s.instruction, "artifact_id": s.artifact_id}
                for s in self.storyboard
            ],
            "video_reference_ids": self.video_reference_ids,
            "video_job": self.video_job.model_dump(mode="json") if self.video_job else None,
            "status": self.status.model_dump(mode="json"),
            "history": self.history.sizes(),
        }
