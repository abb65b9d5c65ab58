"""
Recovery of analysis records from raw model output.

Models are asked for a bare JSON object but regularly wrap it in markdown fences, put a sentence in front of
it, leave trailing commas, use single quotes or get cut off at their output limit. normalize_response() runs
an ordered cascade of increasingly aggressive strategies and stops at the first that produces a JSON object:

1. strip every markdown fence marker and parse the rest
2. parse the span from the first "{" to the last "}"
3. repair the punctuation of that span (trailing commas, bare keys, single quotes) and parse it
4. pull every known field out of the raw text with a regular expression

Tier 4 cannot fail, and whatever tier succeeds the result goes through apply_schema_defaults(), so every
input, including None and the empty string, yields a complete AnalysisRecord. The order matters: earlier
tiers keep more of the model's output intact.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from constants import RATING_FIELDS, VERDICT_FIELDS
from record import AnalysisRecord, apply_schema_defaults, unresolved_ratings

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```[A-Za-z0-9_+-]*")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BAREWORD_KEY = re.compile(r"([A-Za-z_$][A-Za-z0-9_$-]*)(\s*):")

# Fields recovered by tier 4, as they are nested in the record
TEXT_FIELDS = {
    None: ("industry_type", "market_position"),
    "company_overview": ("company_name", "industry", "business_model", "key_offerings", "market_position",
                         "founded_on"),
    "proposed_deal_structure": ("investment_amount", "valuation_cap", "equity_stake", "anti_dilution_protection",
                                "board_seat", "liquidation_preference", "vesting_schedule", "other_terms"),
    "market_analysis": ("market_size", "growth_rate"),
}
LIST_FIELDS = {
    None: ("strengths", "weaknesses"),
    "key_questions": ("market_strategy", "user_relation", "regulatory_compliance"),
    "market_analysis": ("trends", "challenges"),
}
NUMBER_FIELDS = {
    None: RATING_FIELDS,
    "final_verdict": VERDICT_FIELDS,
}


class RepairTier(IntEnum):
    FENCE_STRIP = 1
    BRACE_EXTRACT = 2
    SYNTAX_REPAIR = 3
    FIELD_EXTRACT = 4


@dataclass(frozen=True)
class ParseAttempt:
    tier: RepairTier
    success: bool
    data: Optional[dict] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class NormalizedAnalysis:
    """A complete record plus the evidence of how it was recovered."""
    record: AnalysisRecord
    tier: RepairTier
    attempts: tuple = ()
    unresolved_ratings: tuple = field(default=())

    @property
    def degraded(self) -> bool:
        return self.tier >= RepairTier.SYNTAX_REPAIR

    @property
    def confidence(self) -> str:
        if self.tier <= RepairTier.BRACE_EXTRACT:
            return "high"
        if self.tier == RepairTier.SYNTAX_REPAIR:
            return "medium"
        return "low"


def _loads_object(text: str) -> dict:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def strip_fences(text: str) -> str:
    return _FENCE.sub("", text).strip()


def extract_brace_span(text: str) -> Optional[str]:
    """Returns the greedy span from the first '{' to the last '}', or None if there is none."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return None
    return text[start:end + 1]


def _scan_string(text: str, start: int, quote: str):
    """Returns (end, closed) for the string literal opening at start."""
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1, True
        i += 1
    return len(text), False


def _requote(body: str) -> str:
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue
        out.append('\\"' if ch == '"' else ch)
        i += 1
    return '"' + "".join(out) + '"'


def repair_json_syntax(span: str) -> str:
    """
    Fixes the punctuation errors models commonly make, in a single pass.

    Trailing commas before a closing brace or bracket are dropped, bare object keys are quoted and
    single-quoted strings become double-quoted ones. Text inside double-quoted strings is copied unchanged.

    :param span: near-JSON text
    :return: str
    """
    out = []
    i = 0
    expect_key = False
    while i < len(span):
        ch = span[i]

        if ch == '"':
            end, _ = _scan_string(span, i, '"')
            out.append(span[i:end])
            i = end
            expect_key = False
            continue

        if ch == "'":
            end, closed = _scan_string(span, i, "'")
            if closed:
                out.append(_requote(span[i + 1:end - 1]))
            else:
                out.append(span[i:end])
            i = end
            expect_key = False
            continue

        if ch == ",":
            if _TRAILING_COMMA.match(span, i):
                i += 1
                continue
            expect_key = True
        elif ch == "{":
            expect_key = True
        elif expect_key and not ch.isspace():
            expect_key = False
            match = _BAREWORD_KEY.match(span, i)
            if match:
                out.append(f'"{match.group(1)}"{match.group(2)}:')
                i = match.end()
                continue

        out.append(ch)
        i += 1
    return "".join(out)


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value


def _find_text(raw: str, name: str) -> Optional[str]:
    match = re.search(rf'"{re.escape(name)}"\s*:\s*"((?:[^"\\]|\\.)*)"', raw, re.IGNORECASE)
    return _unescape(match.group(1)) if match else None


def _find_number(raw: str, name: str) -> Optional[float]:
    match = re.search(rf'"{re.escape(name)}"\s*:\s*(-?\d+(?:\.\d+)?)', raw, re.IGNORECASE)
    return float(match.group(1)) if match else None


def _find_list(raw: str, name: str) -> Optional[list]:
    match = re.search(rf'"{re.escape(name)}"\s*:\s*\[((?:[^\]"]|"(?:[^"\\]|\\.)*")*)\]?', raw, re.IGNORECASE)
    if not match:
        return None
    return [_unescape(item) for item in re.findall(r'"((?:[^"\\]|\\.)*)"', match.group(1))]


def _object_span(text: str, start: int) -> str:
    """Returns the object opening at start, up to the end of the text if it is never closed."""
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch == '"':
            i, _ = _scan_string(text, i, '"')
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
        i += 1
    return text[start:]


def _own_keys(text: str) -> str:
    """Blanks out every object nested inside the outermost one, so only the outermost keys are left."""
    out = []
    depth = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"':
            end, _ = _scan_string(text, i, '"')
            if depth <= 1:
                out.append(text[i:end])
            i = end
            continue
        if ch == "{":
            depth += 1
        if depth <= 1:
            out.append(ch)
        if ch == "}" and depth > 0:
            depth -= 1
        i += 1
    return "".join(out)


def _section_scope(raw: str, section: Optional[str]) -> Optional[str]:
    if section is None:
        return _own_keys(raw)
    match = re.search(rf'"{re.escape(section)}"\s*:\s*\{{', raw, re.IGNORECASE)
    if not match:
        return None
    return _own_keys(_object_span(raw, match.end() - 1))


def extract_fields(raw: str) -> dict:
    """
    Recovers whatever known fields can be found in the raw text, one field at a time.

    Top-level fields are only looked up outside nested objects, and section fields only inside their
    section, so a competitor's growth_rate never ends up in market_analysis. Only fields that were found
    are returned; apply_schema_defaults() supplies "Not Specified", 5 and [] for the rest.

    :param raw: model output
    :return: dict shaped like a (partial) AnalysisRecord
    """
    data = {}
    scopes = {}

    def scope(section):
        if section not in scopes:
            scopes[section] = _section_scope(raw, section)
        return scopes[section]

    def put(section, name, value):
        if value is None:
            return
        target = data if section is None else data.setdefault(section, {})
        target[name] = value

    for section, names in TEXT_FIELDS.items():
        text = scope(section)
        if text is None:
            continue
        for name in names:
            put(section, name, _find_text(text, name))
    for section, names in LIST_FIELDS.items():
        text = scope(section)
        if text is None:
            continue
        for name in names:
            put(section, name, _find_list(text, name))
    for section, names in NUMBER_FIELDS.items():
        text = scope(section)
        if text is None:
            continue
        for name in names:
            number = _find_number(text, name)
            put(section, name, int(number) if number is not None and number.is_integer() else number)
    return data


def _attempt(tier: RepairTier, parse, text) -> ParseAttempt:
    if text is None:
        return ParseAttempt(tier=tier, success=False, error="no JSON object found")
    try:
        return ParseAttempt(tier=tier, success=True, data=parse(text))
    except (ValueError, RecursionError) as e:
        return ParseAttempt(tier=tier, success=False, error=str(e))


def run_cascade(raw: str) -> list:
    """
    Runs the repair tiers in order until one produces a JSON object.

    :param raw: model output
    :return: list of ParseAttempt, the last one successful
    """
    span = extract_brace_span(raw)
    tiers = (
        (RepairTier.FENCE_STRIP, lambda: strip_fences(raw), _loads_object),
        (RepairTier.BRACE_EXTRACT, lambda: span, _loads_object),
        (RepairTier.SYNTAX_REPAIR, lambda: span, lambda text: _loads_object(repair_json_syntax(text))),
    )

    attempts = []
    for tier, text, parse in tiers:
        attempt = _attempt(tier, parse, text())
        attempts.append(attempt)
        if attempt.success:
            return attempts
        logger.debug("Repair tier %d (%s) failed: %s", tier, tier.name, attempt.error)

    attempts.append(ParseAttempt(tier=RepairTier.FIELD_EXTRACT, success=True, data=extract_fields(raw)))
    return attempts


def normalize_response(raw) -> NormalizedAnalysis:
    """
    Turns raw model output into a complete, validated analysis record. Never raises.

    :param raw: model output (str, None treated as empty)
    :return: NormalizedAnalysis
    """
    if raw is None:
        raw = ""
    elif not isinstance(raw, str):
        raw = str(raw)

    attempts = run_cascade(raw)
    final = attempts[-1]
    result = NormalizedAnalysis(
        record=apply_schema_defaults(final.data),
        tier=final.tier,
        attempts=tuple(attempts),
        unresolved_ratings=tuple(unresolved_ratings(final.data)),
    )

    if result.degraded:
        logger.warning("Model output recovered with repair tier %d (%s), confidence %s; %d ratings defaulted",
                       result.tier, result.tier.name, result.confidence, len(result.unresolved_ratings))
    else:
        logger.info("Model output parsed with repair tier %d (%s)", result.tier, result.tier.name)
    return result
