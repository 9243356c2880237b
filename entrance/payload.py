"""
Identity payload recovery
=========================

Member cards carry a JSON identity record:

    {"id": 7, "memberId": 7, "name": "...", "phone": "69...", "timestamp": 1700000000000}

What reaches us is rarely that clean. USB wedge scanners type the payload
through whatever keyboard layout the front-desk PC has active, so on a Greek
layout the field names arrive as `ιδ` / `μεμβερΙδ` and the colon as `¨`.
Copy/paste through other systems adds typographic quotes, BOMs, zero-width
characters and UTF-8-read-as-Latin-1 debris. Some scanners also prepend an
AIM symbology identifier (`]Q1`) or wrap the data in STX/ETX.

`recover_member_id()` runs an ordered list of named strategies and stops at
the first one that yields a positive integer:

    1. cleanup pass (always runs; produces the "cleaned" text)
    2. structured JSON parse of the cleaned text
    3. field regexes on the cleaned text (id/ID before memberId, ASCII before Greek)
    4. first 1-3 digit run on the cleaned text
    5. steps 3-4 on the raw text, then the first digit run of any length
    6. whole token as a bare integer

Member ids are small; phone numbers (10 digits) and ms timestamps (13 digits)
never satisfy step 4, which is why the short-run heuristic is safe.

The strategy list is data (`STRATEGIES`) so the fallback order can be
inspected and tested directly.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

log = logging.getLogger("entrance.payload")

# SQLite INTEGER upper bound; anything larger cannot be a member id.
MAX_MEMBER_ID = 2**63 - 1
# Bound regex work on hostile input.
MAX_TOKEN_LEN = 4096

# ---------------------------------------------------------------------------
# Corruption tables
# ---------------------------------------------------------------------------

# Latin key -> Greek character produced by the same key on the Greek layout.
# (q and w produce punctuation on that layout and never appear in field names.)
_GREEK_LAYOUT = str.maketrans(
    "abcdefghijklmnoprstuvxyzABCDEFGHIJKLMNOPRSTUVXYZ",
    "αβψδεφγηιξκλμνοπρστθωχυζΑΒΨΔΕΦΓΗΙΞΚΛΜΝΟΠΡΣΤΘΩΧΥΖ",
)

# Glyphs observed in place of ':' (Greek layout shift+; and friends).
COLON_GLYPHS = ("¨", "΅", "΄", "：", "∶", "ː", "꞉")

# Anything that should have been a plain double quote.
_QUOTE_GLYPHS = ("“", "”", "„", "‟", "«", "»", "″", "‘", "’", "‚", "‛", "′", "`", "´", "'")

# UTF-8 bytes decoded as cp1252/Latin-1: quote mojibake first, then stray bytes.
_MOJIBAKE_QUOTES = ("â€œ", "â€\x9d", "â€ž", "â€˜", "â€™")
_GARBAGE = ("\ufeff", "\u00ef\u00bb\u00bf", "\u200b", "\u200c", "\u200d", "\u2060", "\ufffd", "\u00c2")

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_AIM_PREFIX_RE = re.compile(r"^\]Q\d")

CANONICAL_FIELDS = ("memberId", "id", "name", "phone", "timestamp")

# Identifier keys for the structured parse, most specific first.
ID_KEYS = ("id", "ID", "memberId", "memberid", "member_id")


def greek_layout_variants(field: str) -> Tuple[str, ...]:
    """Spellings of `field` as typed on a Greek keyboard layout (as-is, UPPER, lower)."""
    out: List[str] = []
    for form in (field, field.upper(), field.lower()):
        v = form.translate(_GREEK_LAYOUT)
        if v != form and v not in out:
            out.append(v)
    return tuple(out)


# variant -> canonical, longest first so 'μεμβερΙδ' wins over its 'ιδ' suffix
_FIELD_VARIANTS: Dict[str, str] = {}
for _field in CANONICAL_FIELDS + ("member_id",):
    for _v in greek_layout_variants(_field):
        _FIELD_VARIANTS.setdefault(_v, "memberId" if _field == "member_id" else _field)

_TRANSLIT_ID_KEYS = (
    greek_layout_variants("id")
    + greek_layout_variants("memberId")
    + greek_layout_variants("member_id")
)

_FIELD_VARIANT_RE = re.compile(
    r"(?:(?<=[\"{,\s])|^)("
    + "|".join(re.escape(v) for v in sorted(_FIELD_VARIANTS, key=len, reverse=True))
    + r")(?=\"?\s*[:=])"
)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

def clean_payload(raw: str) -> str:
    """Undo the known transport corruptions. Never raises."""
    s = (raw or "")[:MAX_TOKEN_LEN]
    for q in _MOJIBAKE_QUOTES:
        s = s.replace(q, '"')
    for g in _GARBAGE:
        s = s.replace(g, "")
    s = _CONTROL_RE.sub("", s).replace("\xa0", " ").strip()
    s = _AIM_PREFIX_RE.sub("", s)

    for g in COLON_GLYPHS:
        s = s.replace(g, ":")
    for q in _QUOTE_GLYPHS:
        s = s.replace(q, '"')

    s = _FIELD_VARIANT_RE.sub(lambda m: _FIELD_VARIANTS[m.group(1)], s)
    return s.strip()


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def as_member_id(value: Any) -> Optional[int]:
    """Coerce a JSON value / digit string to a valid member id, else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        n = int(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s.isascii() or not s.isdigit():
            return None
        n = int(s)
    else:
        return None
    return n if 0 < n <= MAX_MEMBER_ID else None


def _first_valid(matches: Iterable[str]) -> Optional[int]:
    for m in matches:
        n = as_member_id(m)
        if n is not None:
            return n
    return None


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _structured_candidates(text: str) -> Iterable[str]:
    yield text
    lo, hi = text.find("{"), text.rfind("}")
    if 0 <= lo < hi and (lo, hi) != (0, len(text) - 1):
        yield text[lo:hi + 1]


def extract_structured(text: str) -> Optional[int]:
    """Strict JSON object parse; id keys in priority order."""
    for candidate in _structured_candidates(text):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        for key in ID_KEYS + _TRANSLIT_ID_KEYS:
            n = as_member_id(data.get(key))
            if n is not None:
                return n
    return None


_SEP = r"\"?\s*[:=" + "".join(COLON_GLYPHS) + r"]\s*\"?\s*"

# (name, key regex), most specific first, ASCII before Greek-layout spellings.
FIELD_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("id", r"(?<![A-Za-z_])(?:id|ID|Id)"),
    ("memberId", r"(?<![A-Za-z_])(?:member_?id|member_?Id|member_?ID|MEMBER_?ID)"),
    ("id_greek", r"(?<![^\W\d_])(?:ιδ|ΙΔ)"),
    ("memberId_greek", r"(?:μεμβερ_?[ιΙ][δΔ]|ΜΕΜΒΕΡ_?ΙΔ)"),
)

_FIELD_RES = tuple((name, re.compile(key + _SEP + r"(\d+)")) for name, key in FIELD_PATTERNS)
_SHORT_RUN_RE = re.compile(r"\b(\d{1,3})\b")
_ANY_RUN_RE = re.compile(r"\d+")


def _field_extractor(rx: "re.Pattern[str]") -> Callable[[str], Optional[int]]:
    def extract(text: str) -> Optional[int]:
        return _first_valid(m.group(1) for m in rx.finditer(text))
    return extract


def extract_short_run(text: str) -> Optional[int]:
    return _first_valid(m.group(1) for m in _SHORT_RUN_RE.finditer(text))


def extract_any_run(text: str) -> Optional[int]:
    return _first_valid(m.group(0) for m in _ANY_RUN_RE.finditer(text))


def extract_bare_integer(text: str) -> Optional[int]:
    return as_member_id(text.strip())


@dataclass(frozen=True)
class ParseStrategy:
    name: str
    source: str  # "cleaned" | "raw"
    extract: Callable[[str], Optional[int]]


def _build_strategies() -> Tuple[ParseStrategy, ...]:
    out: List[ParseStrategy] = [ParseStrategy("structured", "cleaned", extract_structured)]
    out += [ParseStrategy(f"field:{name}", "cleaned", _field_extractor(rx)) for name, rx in _FIELD_RES]
    out.append(ParseStrategy("short_run", "cleaned", extract_short_run))
    out += [ParseStrategy(f"raw_field:{name}", "raw", _field_extractor(rx)) for name, rx in _FIELD_RES]
    out.append(ParseStrategy("raw_short_run", "raw", extract_short_run))
    out.append(ParseStrategy("raw_any_run", "raw", extract_any_run))
    out.append(ParseStrategy("bare_integer", "raw", extract_bare_integer))
    return tuple(out)


STRATEGIES: Tuple[ParseStrategy, ...] = _build_strategies()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecoveryResult:
    member_id: Optional[int]
    strategy: Optional[str]
    cleaned: str

    @property
    def ok(self) -> bool:
        return self.member_id is not None


def recover_member_id(
    raw: Any,
    strategies: Tuple[ParseStrategy, ...] = STRATEGIES,
) -> RecoveryResult:
    """
    Recover a member id from an untrusted scan token. Never raises; a token
    with nothing recoverable returns RecoveryResult(member_id=None, ...).
    """
    raw_text = raw if isinstance(raw, str) else ("" if raw is None else str(raw))
    raw_text = raw_text[:MAX_TOKEN_LEN]
    cleaned = clean_payload(raw_text)
    texts = {"cleaned": cleaned, "raw": raw_text}

    for strat in strategies:
        try:
            n = strat.extract(texts[strat.source])
        except Exception:
            log.exception("strategy_failed", extra={"strategy": strat.name})
            continue
        if n is not None:
            log.debug("payload_recovered", extra={"strategy": strat.name, "member_id": n})
            return RecoveryResult(member_id=n, strategy=strat.name, cleaned=cleaned)

    log.debug("payload_unrecognized", extra={"raw": raw_text[:80]})
    return RecoveryResult(member_id=None, strategy=None, cleaned=cleaned)


def make_identity_payload(member_id: int, name: str = "", phone: str = "",
                          timestamp_ms: Optional[int] = None) -> str:
    """The JSON record a member card encodes (same shape as the card generator)."""
    return json.dumps(
        {
            "id": int(member_id),
            "memberId": int(member_id),
            "name": name,
            "phone": phone,
            "timestamp": int(timestamp_ms if timestamp_ms is not None else time.time() * 1000),
        },
        ensure_ascii=False,
    )
