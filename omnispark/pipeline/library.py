"""
Asset Library & Product Library.

The Asset Library holds deep snapshots of concepts, images and videos the user
chose to keep; it is independent of History, so removing an asset never
touches lineage. The Product Library remembers briefs for one-click reuse.

Both support deletion and pinning and persist across sessions through a
storage backend. Listing order: pinned first, then newest.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from ..presets import CREATIVE_DIRECTIONS
from .models import (
    AssetType,
    LibraryAsset,
    LibraryMeta,
    MediaPayload,
    Mode,
    ProductBrief,
    ProductRecord,
    now_ms,
)
from .storage import StorageBackend

logger = logging.getLogger(__name__)

ASSET_COLLECTION = "library_assets"
PRODUCT_COLLECTION = "products"

MODE_LABELS = {
    Mode.VIDEO: "🎬 视频",
    Mode.IMAGE: "📸 图片",
    Mode.PDP: "📑 详情页",
}


def mode_label(mode: Optional[Mode]) -> str:
    if mode is None:
        return "未知"
    return MODE_LABELS.get(Mode(mode), "未知")


def _pinned_then_newest(items: Iterable) -> list:
    # Stable sort; callers keep their lists newest-first so equal timestamps hold order
    return sorted(items, key=lambda item: (not item.pinned, -item.timestamp))


# ═════════════════════════════════════════════════════════════════════════════
# Asset Library
# ═════════════════════════════════════════════════════════════════════════════

class AssetLibrary:
    def __init__(self, backend: StorageBackend):
        self.backend = backend
        rows = list(reversed(backend.load(ASSET_COLLECTION)))
        self._assets: list[LibraryAsset] = sorted(
            (LibraryAsset.model_validate(row) for row in rows),
            key=lambda a: -a.timestamp,
        )
        logger.info(f"Asset library loaded: {len(self._assets)} assets")

    def _persist(self, asset: LibraryAsset):
        self.backend.upsert(ASSET_COLLECTION, asset.model_dump(mode="json"))

    def promote(
        self,
        asset_type: Union[AssetType, str],
        content: Any,
        meta: Optional[LibraryMeta] = None,
    ) -> LibraryAsset:
        """Snapshot `content` into the library. History is not touched."""
        asset = LibraryAsset.snapshot(AssetType(asset_type), content, meta)
        self._assets.insert(0, asset)
        self._persist(asset)
        logger.info(f"Promoted {asset.type.value} {asset.id} to library")
        return asset

    def get(self, asset_id: str) -> Optional[LibraryAsset]:
        return next((a for a in self._assets if a.id == asset_id), None)

    def remove(self, asset_id: str) -> bool:
        before = len(self._assets)
        self._assets = [a for a in self._assets if a.id != asset_id]
        if len(self._assets) == before:
            return False
        self.backend.delete(ASSET_COLLECTION, asset_id)
        return True

    def toggle_pin(self, asset_id: str) -> Optional[LibraryAsset]:
        for i, asset in enumerate(self._assets):
            if asset.id == asset_id:
                updated = asset.model_copy(update={"pinned": not asset.pinned})
                self._assets[i] = updated
                self._persist(updated)
                return updated
        return None

    def assets(self, mode: Union[Mode, str] = "all") -> list[LibraryAsset]:
        if mode == "all":
            selected = self._assets
        else:
            mode = Mode(mode)
            selected = [a for a in self._assets if a.meta.mode == mode]
        return _pinned_then_newest(selected)

    def by_type(self, asset_type: Union[AssetType, str], mode: Union[Mode, str] = "all") -> list[LibraryAsset]:
        asset_type = AssetType(asset_type)
        return [a for a in self.assets(mode) if a.type == asset_type]

    def export_markdown(self, mode: Union[Mode, str] = "all") -> str:
        """Markdown report of the (filtered) library."""
        concepts = self.by_type(AssetType.CONCEPT, mode)
        images = self.by_type(AssetType.IMAGE, mode)
        videos = self.by_type(AssetType.VIDEO, mode)

        md = "# 创意素材库导出\n\n"
        md += f"> 导出时间: {datetime.now():%Y-%m-%d %H:%M:%S}\n"
        md += f"> 筛选模式: {'全部' if mode == 'all' else mode_label(Mode(mode))}\n\n"

        if concepts:
            md += f"## 💡 创意灵感 ({len(concepts)})\n\n"
            for i, asset in enumerate(concepts, 1):
                content = asset.content if isinstance(asset.content, dict) else {}
                md += f"### {i}. {content.get('title') or asset.meta.title or ''}\n"
                md += f"* [{mode_label(asset.meta.mode)}] 商品: {asset.meta.product_name} *\n"
                md += f"**场景:** {content.get('description', '')}\n\n"
                md += f"**内容:** {content.get('script', '')}\n\n"
                md += "---\n"

        if images:
            md += f"\n## 🎨 视觉素材 ({len(images)})\n\n"
            for i, asset in enumerate(images, 1):
                md += f"### 图片 {i}\n"
                md += f"* [{mode_label(asset.meta.mode)}] 商品: {asset.meta.product_name} *\n"
                md += f"Prompt: {asset.meta.prompt or 'N/A'}\n\n"
                md += f"![Generated Image]({asset.content})\n\n"

        if videos:
            md += f"\n## 🎬 视频 ({len(videos)})\n\n"
            for i, asset in enumerate(videos, 1):
                md += f"### 视频 {i}: {asset.meta.concept_title or asset.meta.title or ''}\n"
                md += f"* [{mode_label(asset.meta.mode)}] 商品: {asset.meta.product_name} *\n"
                md += f"[Video]({asset.content})\n\n"

        return md


# ═════════════════════════════════════════════════════════════════════════════
# Product Library
# ═════════════════════════════════════════════════════════════════════════════

def _migrate_legacy(row: dict) -> dict:
    """Old rows stored a single `userImage` instead of an `images` list."""
    row = dict(row)
    if "images" not in row:
        legacy = row.pop("userImages", None)
        if legacy is None:
            single = row.pop("userImage", None)
            legacy = [single] if single else []
        row["images"] = legacy
    if "isPinned" in row:
        row.setdefault("pinned", row.pop("isPinned"))
    return row


class ProductLibrary:
    def __init__(self, backend: StorageBackend):
        self.backend = backend
        rows = list(reversed(backend.load(PRODUCT_COLLECTION)))
        self._records: list[ProductRecord] = sorted(
            (ProductRecord.model_validate(_migrate_legacy(row)) for row in rows),
            key=lambda r: -r.timestamp,
        )

    def _persist(self, record: ProductRecord):
        self.backend.upsert(PRODUCT_COLLECTION, record.model_dump(mode="json"))

    def save(self, brief: ProductBrief) -> ProductRecord:
        """
        Record a brief. An exact (name, description, images) match is moved to
        the top with a fresh timestamp and keeps its pin; otherwise a new
        record is added.
        """
        candidate = ProductRecord(
            name=brief.name,
            description=brief.description,
            images=[img.to_data_url() for img in brief.reference_images],
        )

        for i, existing in enumerate(self._records):
            if existing.same_product(candidate):
                refreshed = existing.model_copy(update={"timestamp": now_ms()})
                del self._records[i]
                self._records.insert(0, refreshed)
                self._persist(refreshed)
                logger.info(f"Product '{brief.name}' already in library; refreshed")
                return refreshed

        self._records.insert(0, candidate)
        self._persist(candidate)
        logger.info(f"Saved product '{brief.name}' to library")
        return candidate

    def get(self, record_id: str) -> Optional[ProductRecord]:
        return next((r for r in self._records if r.id == record_id), None)

    def toggle_pin(self, record_id: str) -> Optional[ProductRecord]:
        for i, record in enumerate(self._records):
            if record.id == record_id:
                updated = record.model_copy(update={"pinned": not record.pinned})
                self._records[i] = updated
                self._persist(updated)
                return updated
        return None

    def delete(self, record_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != record_id]
        if len(self._records) == before:
            return False
        self.backend.delete(PRODUCT_COLLECTION, record_id)
        return True

    def records(self) -> list[ProductRecord]:
        return _pinned_then_newest(self._records)

    def apply(self, record_id: str, creative_direction: Optional[str] = None) -> ProductBrief:
        """Rebuild a brief from a stored product."""
        record = self.get(record_id)
        if record is None:
            raise KeyError(record_id)
        return ProductBrief(
            name=record.name,
            description=record.description,
            creative_direction=creative_direction or CREATIVE_DIRECTIONS[0],
            reference_images=tuple(MediaPayload.from_data_url(url) for url in record.images),
        )
