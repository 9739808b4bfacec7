from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Mapping, Optional, Sequence

from .models import ComponentInterpretation, RecoveredResult

logger = logging.getLogger(__name__)

# (text, expected_ids) -> {id: {"label": ..., "interpretation": ...}}
Strategy = Callable[[str, Sequence[str]], dict[str, dict[str, str]]]
Validator = Callable[[Any, Sequence[str], float], Optional[dict[str, dict[str, str]]]]
DefaultBuilder = Callable[[Sequence[str]], dict[str, dict[str, str]]]
# component id -> regex fragment matching that id in free text
IdPattern = Callable[[str], str]

DEFAULT_VALIDATION_THRESHOLD = 0.5
PLACEHOLDER_INTERPRETATION = "Unable to interpret: the LLM response could not be parsed for this component."
LABEL_KEYS = ("label", "name")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
# "a" "b"  or  } "b"  or  ] "b"  across whitespace / newlines
_MISSING_COMMA_RE = re.compile(r'(["}\]])(\s*\n\s*)(")')
_JSON_STRING = r'"((?:[^"\\]|\\.)*)"'


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


def clean_json_text(text: str, *, array: bool = False) -> str:
    """Reduce an LLM reply to its JSON object (or array): drop code fences and prose, repair common comma slips."""
    if not text:
        return ""
    cleaned = text.strip()
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    start = cleaned.find("[" if array else "{")
    end = cleaned.rfind("]" if array else "}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    cleaned = _MISSING_COMMA_RE.sub(r"\1,\2\3", cleaned)
    return cleaned


def parse_json_response(text: str) -> Any | None:
    """Decode the cleaned reply as an object, then as an array, then the raw reply. Returns None when none is JSON."""
    for candidate in (clean_json_text(text), clean_json_text(text, array=True), (text or "").strip()):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------


def _label_of(value: Mapping[str, Any]) -> Any:
    for key in LABEL_KEYS:
        if key in value:
            return value[key]
    return None


def validate_component_mapping(
    parsed: Any,
    expected_ids: Sequence[str],
    threshold: float = DEFAULT_VALIDATION_THRESHOLD,
    *,
    key_resolver: Callable[[Mapping[str, Any], str], Any] | None = None,
) -> dict[str, dict[str, str]] | None:
    """
    Accept a decoded reply when enough expected ids are present and every present entry is well formed.

    ``key_resolver(parsed, component_id)`` lets an analysis type accept key aliases; by default
    only the literal id is looked up. Returns the normalized present entries, or None.
    """
    if not isinstance(parsed, Mapping):
        return None
    if not expected_ids:
        return {}

    def lookup(component_id: str) -> Any:
        if key_resolver is not None:
            return key_resolver(parsed, component_id)
        return parsed.get(component_id)

    present: dict[str, dict[str, str]] = {}
    for component_id in expected_ids:
        value = lookup(component_id)
        if value is None:
            continue
        if not isinstance(value, Mapping):
            return None
        label = _label_of(value)
        interpretation = value.get("interpretation")
        if not isinstance(label, str) or not isinstance(interpretation, str):
            return None
        present[component_id] = {"label": label.strip(), "interpretation": interpretation.strip()}

    if len(present) / len(expected_ids) < threshold:
        return None
    return present


# ---------------------------------------------------------------------------
# Pattern-extract
# ---------------------------------------------------------------------------


def _id_pattern(component_id: str) -> str:
    return re.escape(component_id) + r"(?!\w)"


def _unescape(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


def extract_key_value_objects(
    text: str, expected_ids: Sequence[str], *, id_pattern: IdPattern = _id_pattern
) -> dict[str, dict[str, str]]:
    """``"F1": {"label": "...", "interpretation": "..."}`` even when the surrounding JSON is broken."""
    out: dict[str, dict[str, str]] = {}
    for component_id in expected_ids:
        block = re.search(r'"' + id_pattern(component_id) + r'"\s*:\s*\{(.*?)\}', text, re.DOTALL)
        if not block:
            continue
        body = block.group(1)
        interp = re.search(r'"interpretation"\s*:\s*' + _JSON_STRING, body, re.DOTALL)
        if not interp:
            continue
        label = re.search(r'"(?:label|name)"\s*:\s*' + _JSON_STRING, body, re.DOTALL)
        out[component_id] = {
            "label": _unescape(label.group(1)).strip() if label else component_id,
            "interpretation": _unescape(interp.group(1)).strip(),
        }
    return out


def extract_bare_values(
    text: str, expected_ids: Sequence[str], *, id_pattern: IdPattern = _id_pattern
) -> dict[str, dict[str, str]]:
    """``"F1": "interpretation text"``"""
    out: dict[str, dict[str, str]] = {}
    for component_id in expected_ids:
        match = re.search(r'"' + id_pattern(component_id) + r'"\s*:\s*' + _JSON_STRING, text, re.DOTALL)
        if match:
            out[component_id] = {"label": component_id, "interpretation": _unescape(match.group(1)).strip()}
    return out


def extract_markdown_headings(
    text: str, expected_ids: Sequence[str], *, id_pattern: IdPattern = _id_pattern
) -> dict[str, dict[str, str]]:
    """``**F1**: text`` on one line, or a ``## F1: Label`` heading followed by a paragraph."""
    out: dict[str, dict[str, str]] = {}
    for component_id in expected_ids:
        bold = re.search(
            r"\*\*" + id_pattern(component_id) + r"\*\*\s*[:\-]?\s*(?P<text>[^\n]+)",
            text,
        )
        if bold and bold.group("text").strip():
            out[component_id] = {"label": component_id, "interpretation": bold.group("text").strip()}
            continue
        heading = re.search(
            r"^#{1,6}[ \t]*" + id_pattern(component_id) + r"[ \t]*[:\-]?[ \t]*(?P<label>[^\n]*)\n+(?P<text>(?:(?!#)[^\n]+\n?)+)",
            text,
            re.MULTILINE,
        )
        if heading and heading.group("text").strip():
            label = heading.group("label").strip() or component_id
            out[component_id] = {"label": label, "interpretation": " ".join(heading.group("text").split())}
    return out


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    extract_key_value_objects,
    extract_bare_values,
    extract_markdown_headings,
)


def pattern_extract(
    text: str, expected_ids: Sequence[str], strategies: Sequence[Strategy] = DEFAULT_STRATEGIES
) -> dict[str, dict[str, str]]:
    """Try each strategy in order against the ids still missing. The first strategy to match an id wins."""
    found: dict[str, dict[str, str]] = {}
    if not text:
        return found
    for strategy in strategies:
        remaining = [cid for cid in expected_ids if cid not in found]
        if not remaining:
            break
        partial = strategy(text, remaining)
        for component_id, entry in partial.items():
            if component_id in remaining and entry.get("interpretation"):
                found[component_id] = entry
    return found


# ---------------------------------------------------------------------------
# Default
# ---------------------------------------------------------------------------


def default_placeholders(
    expected_ids: Sequence[str], label_for: Callable[[str], str] | None = None
) -> dict[str, dict[str, str]]:
    return {
        cid: {"label": label_for(cid) if label_for else cid, "interpretation": PLACEHOLDER_INTERPRETATION}
        for cid in expected_ids
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _as_components(entries: Mapping[str, Mapping[str, str]], source: str) -> dict[str, ComponentInterpretation]:
    return {
        cid: ComponentInterpretation(
            label=str(entry.get("label", cid)),
            interpretation=str(entry.get("interpretation", PLACEHOLDER_INTERPRETATION)),
            source=source,
        )
        for cid, entry in entries.items()
    }


def _fill_missing(
    components: dict[str, ComponentInterpretation],
    expected_ids: Sequence[str],
    default: DefaultBuilder,
) -> dict[str, ComponentInterpretation]:
    missing = [cid for cid in expected_ids if cid not in components]
    if missing:
        # built for the full id list so positional default names stay stable
        entries = _safe_default(default, expected_ids)
        components.update(_as_components({cid: entries[cid] for cid in missing}, "placeholder"))
    return {cid: components[cid] for cid in expected_ids}


def _safe_default(default: DefaultBuilder, expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    try:
        entries = default(expected_ids)
    except Exception:
        logger.warning("Default builder failed; using generic placeholders", exc_info=True)
        return default_placeholders(expected_ids)
    if not isinstance(entries, Mapping) or any(cid not in entries for cid in expected_ids):
        return {**default_placeholders(expected_ids), **(dict(entries) if isinstance(entries, Mapping) else {})}
    return dict(entries)


def recover_response(
    text: str,
    expected_ids: Sequence[str],
    *,
    validate: Validator | None = None,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    default: DefaultBuilder | None = None,
    threshold: float = DEFAULT_VALIDATION_THRESHOLD,
) -> RecoveredResult:
    """
    Reduce one LLM reply to a fully keyed component mapping.

    Tiers: parse + validate, then pattern extraction, then placeholders. Never raises;
    failures inside a tier are logged and the next tier runs.
    """
    expected_ids = [str(cid) for cid in expected_ids]
    validate = validate or validate_component_mapping
    default = default or default_placeholders

    try:
        parsed = parse_json_response(text)
        accepted = validate(parsed, expected_ids, threshold) if parsed is not None else None
    except Exception:
        logger.warning("Parse/validate tier failed unexpectedly", exc_info=True)
        accepted = None
    if accepted is not None:
        logger.debug("Response accepted by validation (%d/%d components)", len(accepted), len(expected_ids))
        return RecoveredResult(
            components=_fill_missing(_as_components(accepted, "parsed"), expected_ids, default),
            tier="parsed",
        )

    logger.debug("Structured parse failed; trying pattern extraction")
    try:
        extracted = pattern_extract(text or "", expected_ids, strategies)
    except Exception:
        logger.warning("Pattern extraction failed unexpectedly", exc_info=True)
        extracted = {}
    if extracted:
        logger.debug("Pattern extraction recovered %d/%d components", len(extracted), len(expected_ids))
        return RecoveredResult(
            components=_fill_missing(_as_components(extracted, "pattern"), expected_ids, default),
            tier="pattern",
        )

    logger.warning("Could not recover any component from the LLM response; using placeholders")
    return RecoveredResult(
        components=_fill_missing({}, expected_ids, default),
        tier="default",
    )


__all__ = [
    "Strategy",
    "IdPattern",
    "DEFAULT_VALIDATION_THRESHOLD",
    "PLACEHOLDER_INTERPRETATION",
    "DEFAULT_STRATEGIES",
    "clean_json_text",
    "parse_json_response",
    "validate_component_mapping",
    "extract_key_value_objects",
    "extract_bare_values",
    "extract_markdown_headings",
    "pattern_extract",
    "default_placeholders",
    "recover_response",
]
