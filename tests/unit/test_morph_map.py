from __future__ import annotations

import pytest

from sqla_relations import MorphMap, UnknownMorphTypeError, morph_map

from ..models import Comment, Image, Post, Video


class TestMorphMap:
    def test_singleton(self) -> None:
        assert MorphMap() is MorphMap()
        assert morph_map() is MorphMap()

    def test_class_alias_attribute(self) -> None:
        assert Post.morph_class() == "post"
        assert MorphMap().resolve("post") is Post

    def test_class_name_fallback(self) -> None:
        assert Comment.morph_class() == "Comment"
        assert MorphMap().resolve("Comment") is Comment

    def test_register(self) -> None:
        morph_map({"picture": Image})

        assert Image.morph_class() == "picture"
        assert MorphMap().resolve("picture") is Image

    def test_register_merges(self) -> None:
        morph_map({"picture": Image})
        morph_map({"clip": Video})

        assert set(MorphMap().aliases) == {"picture", "clip"}

    def test_register_replace(self) -> None:
        morph_map({"picture": Image})
        MorphMap().register({"clip": Video}, merge=False)

        assert set(MorphMap().aliases) == {"clip"}

    def test_aliases_read_only(self) -> None:
        morph_map({"clip": Video})

        with pytest.raises(TypeError):
            MorphMap().aliases["other"] = Post  # type: ignore[index]

    def test_unknown(self) -> None:
        with pytest.raises(UnknownMorphTypeError, match="nope"):
            MorphMap().resolve("nope")

    def test_reset_drops_aliases(self) -> None:
        morph_map({"picture": Image})
        MorphMap.reset()

        assert MorphMap().aliases == {}
        assert Image.morph_class() == "Image"
