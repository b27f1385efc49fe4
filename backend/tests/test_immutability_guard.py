from db.guard import (
    derive_immutable_flag,
    immutability_reasons,
    is_immutable,
    record_immutability_reasons,
)


def test_founding_source_is_immutable() -> None:
    assert immutability_reasons(source="founding", category="fact") == ["founding_source"]


def test_hard_constraint_and_core_value_are_immutable() -> None:
    assert is_immutable({"category": "hard_constraint"})
    assert is_immutable({"category": "value", "subcategory": "core"})
    assert not is_immutable({"category": "value", "subcategory": "secondary"})


def test_metadata_flag_accepts_bool_and_string_forms() -> None:
    assert is_immutable({"category": "fact", "metadata": {"immutable": True}})
    assert is_immutable({"category": "fact", "metadata": {"immutable": "true"}})
    assert not is_immutable({"category": "fact", "metadata": {"immutable": False}})
    assert not is_immutable({"category": "fact", "metadata": "not-a-dict"})


def test_reasons_accumulate() -> None:
    reasons = record_immutability_reasons(
        {
            "source": "founding",
            "category": "hard_constraint",
            "metadata": {"immutable": 1},
        }
    )
    assert reasons == ["founding_source", "hard_constraint", "metadata_immutable"]


def test_derive_immutable_flag_for_plain_record_is_false() -> None:
    assert derive_immutable_flag(
        {"source": "assistant", "category": "preference", "metadata": {}}
    ) is False
