from __future__ import annotations

from patchstream.protocol.engine import (
    CREATE_NO_DIFF_REASON,
    NO_ANCHORS_REASON,
    NO_DIFF_REASON,
    NO_OPS_REASON,
    anchor_excerpt,
    apply_operations,
    apply_patches,
    carry_trailing_comments,
    not_found_reason,
)
from patchstream.protocol.extractor import dedupe_operations, extract_operations

SOURCE = """const App = () => {
  const speed = 5; // pixels per frame
  return null;
};"""


def _replace(find: str, with_text: str) -> str:
    return f"<replace><find>{find}</find><with>{with_text}</with></replace>"


def test_replace_applies_and_counts_ops() -> None:
    result = apply_patches(SOURCE, _replace("return null;", "return <div />;"), is_final=True)

    assert result.success
    assert result.applied_ops == 1
    assert "return <div />;" in result.content


def test_insert_and_delete_operations() -> None:
    body = (
        "<insert_before><find>  return null;</find><with>  // render\n</with></insert_before>"
        "<insert_after><find>};</find><with>\nexport default App;</with></insert_after>"
        "<delete><find>  const speed = 5; // pixels per frame\n</find></delete>"
    )

    result = apply_patches(SOURCE, body, is_final=True)

    assert result.success
    assert result.applied_ops == 3
    assert result.content == "const App = () => {\n  // render\n  return null;\n};\nexport default App;"


def test_strict_mode_rolls_back_on_first_failure() -> None:
    body = _replace("return null;", "return 1;") + _replace("missing anchor", "x")

    result = apply_patches(SOURCE, body, is_final=True)

    assert not result.success
    assert result.reason == 'Anchor not found for op 2 ("missing anchor"); check whitespace/indentation.'
    assert result.content == SOURCE
    assert result.applied_ops == 1


def test_best_effort_skips_failing_operations() -> None:
    body = _replace("missing anchor", "x") + _replace("return null;", "return 1;")

    result = apply_patches(SOURCE, body, is_final=True, best_effort=True)

    assert result.success
    assert result.applied_ops == 1
    assert "return 1;" in result.content


def test_best_effort_with_no_hits_reports_reason() -> None:
    result = apply_patches(SOURCE, _replace("nope", "x"), is_final=True, best_effort=True)

    assert not result.success
    assert result.reason == not_found_reason(1, "nope")

    assert apply_patches(SOURCE, "", is_final=True, best_effort=True).reason == NO_OPS_REASON
    assert NO_ANCHORS_REASON == "No anchors matched."


def test_ambiguous_anchor_fails_without_mutation() -> None:
    source = "a();\na();"

    result = apply_patches(source, _replace("a();", "b();"), is_final=True)

    assert not result.success
    assert result.reason == 'Anchor found 2x for op 1 ("a();"); ambiguous.'
    assert result.content == source


def test_identical_replacement_is_a_final_no_op() -> None:
    result = apply_patches(SOURCE, _replace("return null;", "return null;"), is_final=True)

    assert not result.success
    assert result.no_op
    assert result.reason == NO_DIFF_REASON


def test_empty_body_fails_only_when_final() -> None:
    assert apply_patches(SOURCE, "just prose", is_final=True).reason == NO_OPS_REASON
    assert apply_patches(SOURCE, "just prose", is_final=False).success


def test_create_uses_last_payload_and_detects_no_diff() -> None:
    body = "<create><with>first</with></create><create><with>second</with></create>"

    assert apply_patches("", body, is_final=True).content == "second"

    unchanged = apply_patches("same", "<create><with>same</with></create>", is_final=True)
    assert not unchanged.success
    assert unchanged.no_op
    assert unchanged.reason == CREATE_NO_DIFF_REASON


def test_duplicate_operations_apply_once() -> None:
    body = _replace("return null;", "return 1;") * 2

    result = apply_patches(SOURCE, body, is_final=True)

    assert result.success
    assert result.ops_count == 1
    assert result.content.count("return 1;") == 1


def test_comment_tier_match_keeps_source_comment() -> None:
    body = _replace("const speed = 5; // speed", "const speed = 8;")

    result = apply_patches(SOURCE, body, is_final=True)

    assert result.success
    assert "const speed = 8; // pixels per frame" in result.content


def test_carry_trailing_comments_skips_mismatched_line_counts() -> None:
    assert carry_trailing_comments("a; // c", "x;\ny;") == "x;\ny;"
    assert carry_trailing_comments("a; // c", "x; // own") == "x; // own"


def test_anchor_excerpt_uses_first_line_and_trims() -> None:
    assert anchor_excerpt("\n   const a = 1;\n   const b = 2;\n") == "const a = 1;"
    assert anchor_excerpt("x" * 80) == "x" * 60 + "..."
    assert anchor_excerpt("   ") == ""


def test_failure_reason_names_the_failing_operation() -> None:
    body = (
        _replace("return null;", "return 1;")
        + _replace("const speed = 5; // pixels per frame", "const speed = 6;")
        + _replace("  const missing = true;\n  const other = false;", "x")
    )

    result = apply_patches(SOURCE, body, is_final=True)

    assert not result.success
    assert result.reason == not_found_reason(3, "const missing = true;")
    assert '"const missing = true;"' in result.reason


def test_same_operations_give_identical_output() -> None:
    body = (
        _replace("return null;", "return <div />;")
        + "<insert_before><find>  return</find><with>  const label = 'go';\n</with></insert_before>"
        + _replace("const speed = 5; // speed", "const speed = 8;")
    )
    operations = dedupe_operations(extract_operations(body))
    snapshot = list(operations)

    first = apply_operations(SOURCE, operations, is_final=True)
    second = apply_operations(SOURCE, operations, is_final=True)

    assert first.success
    assert first.applied_ops == 3
    assert second.content == first.content
    assert second.to_dict() == first.to_dict()
    assert operations == snapshot
