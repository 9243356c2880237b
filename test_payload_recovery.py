"""
Payload recovery against the corruptions seen at the front desk.

Covers:
1. Clean card payloads parse structurally
2. Greek keyboard layout (field names + colon) is undone before parsing
3. Typographic quotes, BOM / zero-width debris and AIM prefixes are stripped
4. Broken JSON falls back to field regexes, then short digit runs
5. Unrecoverable tokens return member_id=None and never raise
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from entrance.payload import (
    MAX_MEMBER_ID,
    STRATEGIES,
    as_member_id,
    clean_payload,
    greek_layout_variants,
    make_identity_payload,
    recover_member_id,
)


def test_clean_payload_is_structured():
    token = make_identity_payload(7, "Maria", "6912345678", timestamp_ms=1700000000000)
    res = recover_member_id(token)
    assert res.ok
    assert res.member_id == 7, f"expected 7, got {res.member_id}"
    assert res.strategy == "structured"
    print("[OK] clean payload")


def test_greek_layout_payload():
    token = '{"ιδ"¨12,"μεμβερΙδ"¨12,"ναμε"¨"Νίκος","πηονε"¨"6987654321","τιμεσταμπ"¨1700000000000}'
    cleaned = clean_payload(token)
    assert '"id":12' in cleaned, cleaned
    assert '"memberId":12' in cleaned, cleaned
    assert '"phone":"6987654321"' in cleaned, cleaned

    res = recover_member_id(token)
    assert res.member_id == 12
    assert res.strategy == "structured"
    print("[OK] greek layout payload")


def test_greek_field_values_are_not_rewritten():
    # only key positions are transliterated back
    cleaned = clean_payload('{"id":3,"name":"ιδ"}')
    assert cleaned == '{"id":3,"name":"ιδ"}', cleaned


def test_typographic_quotes_and_garbage():
    token = "\ufeff\u200b{“id”: 21, “name”: “Eleni”}\u200d"
    res = recover_member_id(token)
    assert res.member_id == 21
    assert res.strategy == "structured"

    token = "]Q1" + make_identity_payload(5)
    res = recover_member_id(token)
    assert res.member_id == 5
    assert res.strategy == "structured"
    print("[OK] quotes, BOM, AIM prefix")


def test_boolean_id_is_rejected():
    res = recover_member_id('{"id": true, "memberId": 9}')
    assert res.member_id == 9
    assert as_member_id(True) is None
    assert as_member_id(3.0) == 3
    assert as_member_id(3.5) is None
    assert as_member_id("٣") is None  # non-ASCII digit
    assert as_member_id(MAX_MEMBER_ID + 1) is None


def test_field_regex_fallbacks():
    res = recover_member_id("id:42,name:foo")
    assert res.member_id == 42
    assert res.strategy == "field:id"

    res = recover_member_id("{memberId=15; phone=6912345678")
    assert res.member_id == 15
    assert res.strategy == "field:memberId", res.strategy
    print("[OK] field regex fallbacks")


def test_short_run_heuristic():
    res = recover_member_id("member 7 ok")
    assert res.member_id == 7
    assert res.strategy == "short_run"

    # ids longer than three digits are only found by the any-length run
    res = recover_member_id("12345")
    assert res.member_id == 12345
    assert res.strategy == "raw_any_run"


def test_unrecognized_tokens():
    for token in ("", "   ", "hello world", "0", None, "9" * 10000):
        res = recover_member_id(token)
        assert not res.ok, f"{token!r} should not yield an id, got {res.member_id}"
        assert res.strategy is None
    print("[OK] unrecognized tokens")


def test_strategy_order_is_exposed():
    names = [s.name for s in STRATEGIES]
    assert names[0] == "structured"
    assert names.index("field:id") < names.index("field:memberId")
    assert names.index("field:memberId") < names.index("field:id_greek")
    assert names.index("short_run") < names.index("raw_field:id")
    assert names[-2:] == ["raw_any_run", "bare_integer"]
    assert {s.source for s in STRATEGIES} == {"cleaned", "raw"}


def test_greek_layout_variants():
    assert greek_layout_variants("id") == ("ιδ", "ΙΔ")
    assert greek_layout_variants("memberId")[0] == "μεμβερΙδ"



# (label, token) pairs that must recover the same id as the clean card
EQUIVALENT_TO_CLEAN = [
    ("straight single quotes", "{'id': 7, 'name': 'X'}"),
    ("mismatched quotes", "{'id\": 7, \"name': 'X\"}"),
    ("greek keys + typographic quotes + tonos colon", "{\u201c\u03b9\u03b4\u201d\u03847,\u201c\u03bd\u03b1\u03bc\u03b5\u201d\u0384\u201cX\u201d}"),
    ("greek keys + guillemets + fullwidth colon", "{\u00ab\u03bc\u03b5\u03bc\u03b2\u03b5\u03c1\u0399\u03b4\u00bb\uff1a7}"),
    ("mojibake quotes", "{\u00e2\u20ac\u0153id\u00e2\u20ac\x9d:7}"),
    ("AIM prefix + BOM", "\ufeff]Q1{\"id\":7,\"name\":\"X\"}"),
]


def test_corrupted_variants_match_clean_payload():
    expected = recover_member_id(make_identity_payload(7, "X", timestamp_ms=1700000000000)).member_id
    assert expected == 7
    for label, token in EQUIVALENT_TO_CLEAN:
        res = recover_member_id(token)
        assert res.member_id == expected, f"{label}: {token!r} -> {res}"
        assert res.strategy == "structured", f"{label}: fell through to {res.strategy}"
    print("[OK] corrupted variants match clean payload")


if __name__ == "__main__":
    test_clean_payload_is_structured()
    test_greek_layout_payload()
    test_greek_field_values_are_not_rewritten()
    test_typographic_quotes_and_garbage()
    test_boolean_id_is_rejected()
    test_field_regex_fallbacks()
    test_short_run_heuristic()
    test_unrecognized_tokens()
    test_strategy_order_is_exposed()
    test_greek_layout_variants()
    test_corrupted_variants_match_clean_payload()
    print("\nAll payload tests passed")
