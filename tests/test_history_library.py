"""
Tests for the history store, the asset library and the product library
"""

import pytest

from omnispark.pipeline.history import HistoryStore
from omnispark.pipeline.library import AssetLibrary, ProductLibrary
from omnispark.pipeline.models import (
    AssetType,
    ImageArtifact,
    LibraryMeta,
    Mode,
    ProductBrief,
    VideoArtifact,
)
from omnispark.pipeline.storage import JsonFileBackend, MediaCache


def _image(concept, payload, mode, prompt="p"):
    return ImageArtifact.for_concept(concept, payload, prompt, mode)


class TestHistoryStore:
    """Tests for append-only, newest-first lineage collections."""

    def test_batch_keeps_order_ahead_of_older(self, concept):
        history = HistoryStore()
        old = concept.revised(title="old")
        history.add_concepts([old])
        batch = [concept.revised(title=t) for t in ("a", "b", "c")]
        history.add_concepts(batch)

        assert [c.title for c in history.concepts] == ["a", "b", "c", "old"]

    def test_images_filtered_by_concept_and_mode(self, concept, png_payload):
        """No cross-concept or cross-mode leakage."""
        history = HistoryStore()
        other = concept.revised(title="other")
        mine_video = _image(concept, png_payload, Mode.VIDEO)
        mine_image = _image(concept, png_payload, Mode.IMAGE)
        theirs = _image(other, png_payload, Mode.VIDEO)
        for artifact in (mine_video, mine_image, theirs):
            history.record(artifact)

        result = history.images_for(concept.id, Mode.VIDEO)
        assert result == [mine_video]
        assert all(i.concept_id == concept.id and i.mode == Mode.VIDEO for i in result)

    def test_newest_first(self, concept, png_payload):
        history = HistoryStore()
        first = _image(concept, png_payload, Mode.VIDEO, "first")
        second = _image(concept, png_payload, Mode.VIDEO, "second")
        history.add_image(first)
        history.add_image(second)
        assert [i.prompt for i in history.images_for(concept.id, Mode.VIDEO)] == ["second", "first"]

    def test_concept_groups(self, concept):
        history = HistoryStore()
        other_direction = concept.revised(creative_direction="情感共鸣")
        history.add_concepts([concept])
        history.add_concepts([other_direction])

        groups = history.concept_groups(Mode.VIDEO)
        assert list(groups) == [
            f"{concept.product_name}::情感共鸣",
            f"{concept.product_name}::{concept.creative_direction}",
        ]
        assert history.concept_groups(Mode.IMAGE) == {}

    def test_videos_grouped_by_product_and_title(self):
        history = HistoryStore()
        v1 = VideoArtifact(uri="u1", local_url="/l1", product_name="P", creative_direction="d", concept_title="T")
        v2 = VideoArtifact(uri="u2", local_url="/l2", product_name="P", creative_direction="d", concept_title="U")
        history.record(v1)
        history.record(v2)
        assert history.videos_for("P", "T") == [v1]
        assert list(history.video_groups()) == ["P::U", "P::T"]

    def test_record_rejects_unknown_types(self):
        with pytest.raises(TypeError):
            HistoryStore().record("not an artifact")

    def test_sizes_only_grow(self, concept, png_payload):
        history = HistoryStore()
        history.record([concept, concept.revised()])
        history.record(_image(concept, png_payload, Mode.VIDEO))
        assert history.sizes() == {"concepts": 2, "images": 1, "videos": 0}


class TestAssetLibrary:
    """Tests for promotion, pin, removal and export."""

    def test_promote_does_not_touch_history(self, backend, concept):
        history = HistoryStore()
        history.add_concepts([concept])
        library = AssetLibrary(backend)

        asset = library.promote(AssetType.CONCEPT, concept, LibraryMeta(mode=Mode.VIDEO))
        library.remove(asset.id)

        assert history.concepts == [concept]
        assert library.assets() == []

    def test_pinned_first_then_newest(self, backend):
        library = AssetLibrary(backend)
        a = library.promote(AssetType.VIDEO, "/media/videos/a.mp4")
        b = library.promote(AssetType.VIDEO, "/media/videos/b.mp4")
        library.toggle_pin(a.id)
        assert [x.id for x in library.assets()] == [a.id, b.id]
        library.toggle_pin(a.id)
        assert [x.id for x in library.assets()] == [b.id, a.id]

    def test_mode_filter(self, backend, png_payload):
        library = AssetLibrary(backend)
        library.promote(AssetType.IMAGE, png_payload, LibraryMeta(mode=Mode.IMAGE))
        library.promote(AssetType.IMAGE, png_payload, LibraryMeta(mode=Mode.PDP))
        assert len(library.assets("all")) == 2
        assert [a.meta.mode for a in library.assets(Mode.PDP)] == [Mode.PDP]

    def test_persists_across_instances(self, backend, png_payload):
        first = AssetLibrary(backend)
        asset = first.promote(AssetType.IMAGE, png_payload, LibraryMeta(prompt="p"))
        second = AssetLibrary(backend)
        assert second.get(asset.id).content == png_payload.to_data_url()

    def test_remove_unknown_returns_false(self, backend):
        assert AssetLibrary(backend).remove("missing") is False

    def test_export_markdown(self, backend, concept, png_payload):
        library = AssetLibrary(backend)
        library.promote(AssetType.CONCEPT, concept, LibraryMeta(mode=Mode.VIDEO, product_name="榨汁杯"))
        library.promote(AssetType.IMAGE, png_payload, LibraryMeta(mode=Mode.IMAGE, prompt="Edit: blue"))

        md = library.export_markdown()
        assert md.startswith("# 创意素材库导出")
        assert "## 💡 创意灵感 (1)" in md
        assert f"### 1. {concept.title}" in md
        assert "🎬 视频" in md
        assert "Prompt: Edit: blue" in md

        only_video = library.export_markdown(Mode.VIDEO)
        assert "视觉素材" not in only_video


class TestProductLibrary:
    """Tests for product dedupe, pin, delete, apply and legacy rows."""

    def test_duplicate_moves_to_top_and_keeps_pin(self, backend, brief):
        products = ProductLibrary(backend)
        first = products.save(brief)
        products.toggle_pin(first.id)
        other = products.save(brief.model_copy(update={"name": "另一个"}))
        again = products.save(brief)

        assert again.id == first.id
        assert again.pinned
        assert len(products.records()) == 2
        assert {r.id for r in products.records()} == {first.id, other.id}

    def test_different_images_are_a_new_product(self, backend, brief):
        products = ProductLibrary(backend)
        products.save(brief)
        products.save(brief.model_copy(update={"reference_images": ()}))
        assert len(products.records()) == 2

    def test_apply_rebuilds_brief(self, backend, brief):
        products = ProductLibrary(backend)
        record = products.save(brief)
        applied = products.apply(record.id, "情感共鸣")
        assert isinstance(applied, ProductBrief)
        assert applied.reference_images == brief.reference_images
        assert applied.creative_direction == "情感共鸣"

    def test_apply_unknown_raises(self, backend):
        with pytest.raises(KeyError):
            ProductLibrary(backend).apply("missing")

    def test_delete(self, backend, brief):
        products = ProductLibrary(backend)
        record = products.save(brief)
        assert products.delete(record.id)
        assert ProductLibrary(backend).records() == []

    def test_legacy_single_image_migrated(self, backend, png_payload):
        backend.upsert("products", {
            "id": "legacy-1",
            "name": "旧商品",
            "description": "desc",
            "userImage": png_payload.to_data_url(),
            "timestamp": 1,
            "isPinned": True,
        })
        record = ProductLibrary(backend).get("legacy-1")
        assert record.images == [png_payload.to_data_url()]
        assert record.pinned


class TestStorage:
    def test_json_backend_upsert_replaces(self, tmp_path):
        backend = JsonFileBackend(tmp_path)
        backend.upsert("things", {"id": "1", "v": 1})
        backend.upsert("things", {"id": "1", "v": 2})
        assert backend.load("things") == [{"id": "1", "v": 2}]
        backend.delete("things", "1")
        assert backend.load("things") == []

    def test_corrupt_file_loads_empty(self, tmp_path):
        (tmp_path / "things.json").write_text("{not json", encoding="utf-8")
        assert JsonFileBackend(tmp_path).load("things") == []

    def test_media_cache_urls(self, tmp_path):
        cache = MediaCache(tmp_path)
        url = cache.store_video("job-1", b"data")
        assert url == "/media/videos/job-1.mp4"
        assert cache.path_for(url) == tmp_path / "videos" / "job-1.mp4"
        assert cache.path_for("https://elsewhere") is None
