"""
Tests for store condition expressions and key-condition splitting.
"""
import pytest

from quotaledger.core.errors import ValidationError
from quotaledger.features.store.conditions import Attr, Key, split_key_condition


ITEM = {"pk": "ORG#acme", "sk": "SUB#0001", "version": 3, "status": "ACTIVE", "tier": "L2"}


def test_comparisons_against_present_attributes():
    assert Attr("version").eq(3).evaluate(ITEM)
    assert Attr("version").ne(2).evaluate(ITEM)
    assert Attr("version").lt(4).evaluate(ITEM)
    assert Attr("version").lte(3).evaluate(ITEM)
    assert Attr("version").gt(2).evaluate(ITEM)
    assert Attr("version").gte(3).evaluate(ITEM)
    assert Attr("version").between(1, 3).evaluate(ITEM)
    assert Attr("sk").begins_with("SUB#").evaluate(ITEM)
    assert Attr("status").is_in(["ACTIVE", "PAID"]).evaluate(ITEM)


def test_missing_item_only_satisfies_not_exists():
    assert Attr("pk").not_exists().evaluate(None)
    assert not Attr("pk").exists().evaluate(None)
    assert not Attr("version").eq(1).evaluate(None)
    assert not Attr("version").ne(1).evaluate(None)


def test_missing_attribute_fails_comparisons():
    assert not Attr("deleted_at").eq(None).evaluate(ITEM)
    assert Attr("deleted_at").not_exists().evaluate(ITEM)


def test_type_mismatch_is_false_not_error():
    assert not Attr("status").lt(5).evaluate(ITEM)
    assert not Attr("version").begins_with("3").evaluate(ITEM)


def test_boolean_composition():
    active = Attr("status").eq("ACTIVE")
    old = Attr("version").lt(2)
    assert (active | old).evaluate(ITEM)
    assert not (active & old).evaluate(ITEM)
    assert (~old).evaluate(ITEM)


def test_split_key_condition_partition_only():
    value, sort_condition = split_key_condition(Key("pk").eq("ORG#acme"), "pk")
    assert value == "ORG#acme"
    assert sort_condition is None


def test_split_key_condition_with_sort_range():
    condition = Key("pk").eq("ORG#acme") & Key("sk").begins_with("USAGE#")
    value, sort_condition = split_key_condition(condition, "pk")
    assert value == "ORG#acme"
    assert sort_condition.evaluate({"sk": "USAGE#2026-10"})
    assert not sort_condition.evaluate({"sk": "SUB#1"})


@pytest.mark.parametrize(
    "condition",
    [
        Key("sk").begins_with("USAGE#"),
        Key("pk").gt("ORG#a"),
        Key("pk").eq("a") & Key("sk").ne("b"),
        Key("pk").eq("a") | Key("sk").eq("b"),
        Key("pk").eq("a") & Key("sk").eq("b") & Key("tier").eq("L1"),
    ],
)
def test_split_key_condition_rejects_unsupported_shapes(condition):
    with pytest.raises(ValidationError):
        split_key_condition(condition, "pk")
