"""
Lineage & History Store.

Session-scoped, append-only record of every generated artifact. Entries are
only ever inserted at the front, so each collection reads newest first;
ordering comes from an explicit insertion sequence rather than from list
position or wall-clock time.
"""

import itertools
import logging
from typing import Optional, Union

from .models import Concept, ImageArtifact, Mode, VideoArtifact

logger = logging.getLogger(__name__)

Artifact = Union[Concept, ImageArtifact, VideoArtifact]


def group_key(product_name: str, creative_direction: str) -> str:
    return f"{product_name}::{creative_direction}"


class HistoryStore:
    def __init__(self):
        self._seq = itertools.count()
        # (seq, artifact) pairs, highest seq first
        self._concepts: list[tuple[int, Concept]] = []
        self._images: list[tuple[int, ImageArtifact]] = []
        self._videos: list[tuple[int, VideoArtifact]] = []

    # ── Appends ──────────────────────────────────────────────────────────

    def add_concepts(self, concepts: list[Concept]):
        """Insert a batch ahead of older entries, keeping the batch's own order."""
        seqs = [next(self._seq) for _ in concepts]
        # first item of the batch gets the highest sequence
        seqs.reverse()
        self._concepts[:0] = list(zip(seqs, concepts))

    def add_image(self, image: ImageArtifact):
        self._images.insert(0, (next(self._seq), image))

    def add_video(self, video: VideoArtifact):
        self._videos.insert(0, (next(self._seq), video))

    def record(self, artifact: Union[Artifact, list[Concept]]):
        """Default `on_artifact_created` subscriber."""
        if isinstance(artifact, list):
            self.add_concepts(artifact)
        elif isinstance(artifact, Concept):
            self.add_concepts([artifact])
        elif isinstance(artifact, ImageArtifact):
            self.add_image(artifact)
        elif isinstance(artifact, VideoArtifact):
            self.add_video(artifact)
        else:
            raise TypeError(f"Cannot record {type(artifact).__name__} in history")

    # ── Views ────────────────────────────────────────────────────────────

    @property
    def concepts(self) -> list[Concept]:
        return [c for _, c in self._concepts]

    @property
    def images(self) -> list[ImageArtifact]:
        return [i for _, i in self._images]

    @property
    def videos(self) -> list[VideoArtifact]:
        return [v for _, v in self._videos]

    def sizes(self) -> dict[str, int]:
        return {
            "concepts": len(self._concepts),
            "images": len(self._images),
            "videos": len(self._videos),
        }

    # ── Queries ──────────────────────────────────────────────────────────

    def concepts_for(self, mode: Mode, product_name: Optional[str] = None) -> list[Concept]:
        mode = Mode(mode)
        return [
            c for c in self.concepts
            if c.mode == mode and (product_name is None or c.product_name == product_name)
        ]

    def concept_groups(self, mode: Mode, product_name: Optional[str] = None) -> dict[str, list[Concept]]:
        """Concepts keyed by `product::direction`, groups ordered by their newest member."""
        groups: dict[str, list[Concept]] = {}
        for concept in self.concepts_for(mode, product_name):
            groups.setdefault(group_key(concept.product_name, concept.creative_direction), []).append(concept)
        return groups

    def get_concept(self, concept_id: str) -> Optional[Concept]:
        return next((c for c in self.concepts if c.id == concept_id), None)

    def images_for(self, concept_id: str, mode: Mode) -> list[ImageArtifact]:
        mode = Mode(mode)
        return [i for i in self.images if i.concept_id == concept_id and i.mode == mode]

    def get_image(self, image_id: str) -> Optional[ImageArtifact]:
        return next((i for i in self.images if i.id == image_id), None)

    def videos_for(self, product_name: str, concept_title: str) -> list[VideoArtifact]:
        return [
            v for v in self.videos
            if v.product_name == product_name and v.concept_title == concept_title
        ]

    def video_groups(self) -> dict[str, list[VideoArtifact]]:
        groups: dict[str, list[VideoArtifact]] = {}
        for video in self.videos:
            groups.setdefault(f"{video.product_name}::{video.concept_title}", []).append(video)
        return groups
