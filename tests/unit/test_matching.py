from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest

from sqla_relations.matching import build_dictionary, dictionary_key, match_many, morph_key

from ..models import Comment, Post


class TestDictionaryKey:
    @pytest.mark.parametrize("value", [1, 1.0, Decimal("1"), Decimal("1.00"), "1"])
    def test_numeric_forms_share_a_bucket(self, value: Any) -> None:
        assert dictionary_key(value) == 1
        assert isinstance(dictionary_key(value), int)

    @pytest.mark.parametrize("value", ["01", "007", "+1", " 1", "1.0", "²", "١"])
    def test_other_strings_kept_as_is(self, value: str) -> None:
        assert dictionary_key(value) == value

    def test_negative_canonical_string(self) -> None:
        assert dictionary_key("-5") == -5
        assert dictionary_key("-0") == "-0"

    def test_non_integral_numbers_kept(self) -> None:
        assert dictionary_key(1.5) == 1.5
        assert dictionary_key(Decimal("1.5")) == Decimal("1.5")
        assert dictionary_key(Decimal("NaN")).is_nan()  # type: ignore[union-attr]

    def test_bool_not_widened(self) -> None:
        assert dictionary_key(True) is True

    def test_bytearray(self) -> None:
        assert dictionary_key(bytearray(b"ab")) == b"ab"

    def test_morph_key(self) -> None:
        assert morph_key("post", 1.0) == morph_key("post", "1") == "post:1"
        assert morph_key("post", "01") == "post:01"


class TestMatching:
    def test_zero_padded_keys_do_not_merge(self) -> None:
        comments = [Comment({"id": 1, "post_id": "01"}), Comment({"id": 2, "post_id": "1"})]
        dictionary = build_dictionary(comments, lambda comment: dictionary_key(comment.post_id))

        assert [c.key for c in dictionary["01"]] == [1]
        assert [c.key for c in dictionary[1]] == [2]

    def test_each_owner_gets_own_bucket(self) -> None:
        owners = [Post({"id": "01"}), Post({"id": "1"}), Post({"id": "2"})]
        results = [Comment({"id": 1, "post_id": "01"}), Comment({"id": 2, "post_id": 1})]
        match_many(owners, build_dictionary(results, "post_id"), "id", "comments")

        assert [owner.get_relation("comments").model_keys() for owner in owners] == [[1], [2], []]
