from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Mapping, Sequence

import pandas as pd

from ..errors import DataShapeError
from ..recovery import LABEL_KEYS, PLACEHOLDER_INTERPRETATION, Strategy
from ._util import DESCRIPTION_COLUMN, ID_COLUMN
from .base import AnalysisCapabilitySet

logger = logging.getLogger(__name__)

# every variable must come back before a decoded reply is trusted as-is
LABEL_VALIDATION_THRESHOLD = 1.0
DEFAULT_ACRONYM_LENGTH = 5

ARTICLES = ("a", "an", "the")
PREPOSITIONS = (
    "of", "in", "on", "at", "to", "for", "with", "by", "from", "about",
    "into", "through", "during", "before", "after", "above", "below", "between", "under", "over",
)
SUFFIXES = (
    "ation", "ization", "isation", "ment", "ness", "ance", "ence", "able", "ible", "ical",
    "ized", "ised", "ing", "ion", "ity", "ous", "ive", "ful", "less", "ship",
    "ward", "wise", "like", "erly", "est", "er", "ed", "ly", "al", "ic",
)

_ARTICLE_RE = re.compile(r"\b(?:" + "|".join(ARTICLES) + r")\b", re.IGNORECASE)
_PREPOSITION_RE = re.compile(r"\b(?:" + "|".join(PREPOSITIONS) + r")\b", re.IGNORECASE)
# longest first so the greediest suffix wins at a given position
_SUFFIX_RE = re.compile("(?:" + "|".join(sorted(SUFFIXES, key=len, reverse=True)) + ")$")
_QUESTION_START_RE = re.compile(r"^(?:how|what|when|where|why|which|do you|does|is|are) ")


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


def prepare_variable_info(variable_info: Any) -> pd.DataFrame:
    """
    Check the table of variables to label and return its ``variable``/``description`` columns.

    ``variable`` is optional: when absent, names ``V1..Vn`` are generated.
    """
    if not isinstance(variable_info, pd.DataFrame):
        raise DataShapeError(
            f"variable_info must be a pandas DataFrame with a '{DESCRIPTION_COLUMN}' column, "
            f"got {type(variable_info).__name__}"
        )
    if variable_info.empty:
        raise DataShapeError("variable_info must contain at least one row")
    if DESCRIPTION_COLUMN not in variable_info.columns:
        raise DataShapeError(
            f"variable_info must contain a '{DESCRIPTION_COLUMN}' column. "
            f"The '{ID_COLUMN}' column is optional and generated when missing."
        )
    info = variable_info.copy()
    if ID_COLUMN not in info.columns:
        logger.info("No '%s' column provided; generating names V1..V%d", ID_COLUMN, len(info))
        info[ID_COLUMN] = [f"V{i}" for i in range(1, len(info) + 1)]
    info[ID_COLUMN] = info[ID_COLUMN].astype(str)
    duplicated = sorted(set(info[ID_COLUMN][info[ID_COLUMN].duplicated()]))
    if duplicated:
        raise DataShapeError(f"variable_info has duplicate variable names: {', '.join(duplicated)}")
    info[DESCRIPTION_COLUMN] = info[DESCRIPTION_COLUMN].fillna("").astype(str)
    return info[[ID_COLUMN, DESCRIPTION_COLUMN]].reset_index(drop=True)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_TYPE_INSTRUCTIONS = {
    "short": "Create concise labels of 1-3 words that capture the essential meaning.",
    "phrase": "Create descriptive phrases of 4-7 words that clearly explain the variable.",
    "custom": "Create labels that follow the specific instructions provided.",
}
_TYPE_LENGTHS = {"short": " (1-3 words)", "phrase": " (4-7 words)"}
_ARRAY_FORMAT = '[{"variable": "variable_name", "label": "Generated Label"}, ...]'


def _acronym_length(max_chars: int | None) -> int:
    return max_chars if max_chars is not None else DEFAULT_ACRONYM_LENGTH


def build_system_prompt_label(
    label_type: str = "short", style_hint: str | None = None, max_chars: int | None = None
) -> str:
    if label_type == "acronym":
        instruction = f"Create acronyms or abbreviations of 3-{_acronym_length(max_chars)} characters."
    else:
        instruction = _TYPE_INSTRUCTIONS.get(label_type, "Create appropriate labels for each variable.")
    style = f"\nStyle guidance: use {style_hint} terminology and phrasing." if style_hint else ""
    return (
        "You are an expert at turning variable descriptions into clear, concise labels "
        "for data analysis and reporting.\n\n"
        "Instructions:\n"
        f"- {instruction}\n"
        "- Keep labels clear and unambiguous\n"
        "- Keep the style consistent across all labels\n"
        "- Prefer standard terminology\n"
        "- Avoid special characters unless necessary"
        f"{style}\n\n"
        "Return your response as a JSON array in this format:\n"
        f"{_ARRAY_FORMAT}"
    )


def build_main_prompt_label(
    variable_info: pd.DataFrame,
    label_type: str = "short",
    max_words: int | None = None,
    max_chars: int | None = None,
) -> str:
    if max_words is not None and label_type != "acronym":
        length = f" (at most {max_words} word{'' if max_words == 1 else 's'})"
    elif label_type == "acronym":
        length = f" (3-{_acronym_length(max_chars)} characters)"
    else:
        length = _TYPE_LENGTHS.get(label_type, "")
    if max_chars is not None and label_type != "acronym":
        length += f", no longer than {max_chars} characters"
    listing = "\n".join(
        f'- {var}: "{desc}"' for var, desc in zip(variable_info[ID_COLUMN], variable_info[DESCRIPTION_COLUMN])
    )
    return (
        f"Please create {label_type} labels{length} for the following variables:\n\n"
        f"{listing}\n\n"
        "Return the results as a JSON array in this format:\n"
        f"{_ARRAY_FORMAT}"
    )


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def _entry(label: str) -> dict[str, str]:
    # a label is the whole answer, so it fills both slots
    return {"label": label, "interpretation": label}


def _label_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return next((value[k] for k in LABEL_KEYS if k in value), None)
    return value


def validate_parsed_label(
    parsed: Any, expected_ids: Sequence[str], threshold: float
) -> dict[str, dict[str, str]] | None:
    """
    Accept ``[{"variable": ..., "label": ...}, ...]`` or a ``{variable: label}`` object.

    Any malformed item rejects the whole reply.
    """
    if isinstance(parsed, Mapping) and "variable" in parsed:
        parsed = [parsed]
    pairs: dict[str, str] = {}
    if isinstance(parsed, list):
        for item in parsed:
            if not isinstance(item, Mapping) or "variable" not in item:
                return None
            label = _label_value(item)
            if not isinstance(label, str):
                return None
            pairs[str(item["variable"])] = label
    elif isinstance(parsed, Mapping):
        for variable, value in parsed.items():
            label = _label_value(value)
            if not isinstance(label, str):
                return None
            pairs[str(variable)] = label
    else:
        return None
    if not expected_ids:
        return {}
    present = {v: _entry(pairs[v].strip()) for v in expected_ids if pairs.get(v, "").strip()}
    if len(present) / len(expected_ids) < threshold:
        return None
    return present


def extract_label_objects(text: str, expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    """Complete ``{"variable": ..., "label": ...}`` objects anywhere in the text, e.g. in a cut-off array."""
    found: dict[str, str] = {}
    for match in re.finditer(r"\{[^{}]*\}", text):
        try:
            item = json.loads(match.group(0))
        except ValueError:
            continue
        if isinstance(item, Mapping) and "variable" in item:
            label = _label_value(item)
            if isinstance(label, str) and label.strip():
                found.setdefault(str(item["variable"]), label.strip())
    return {v: _entry(found[v]) for v in expected_ids if v in found}


def extract_label_assignments(text: str, expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    """``"x1": "Label"``, ``x1 = "Label"`` or ``x1: Label`` lines."""
    out: dict[str, dict[str, str]] = {}
    for variable in expected_ids:
        name = re.escape(variable)
        patterns = (
            r'"' + name + r'"\s*:\s*"(?P<label>[^"\n]+)"',
            r"(?<![\w.])" + name + r'(?!\w)\s*[=:]\s*"(?P<label>[^"\n]+)"',
            r"(?<![\w.])" + name + r'(?!\w)[ \t]*[=:][ \t]*(?P<label>[^,\n"]+)',
        )
        for pattern in patterns:
            match = re.search(pattern, text, re.IGNORECASE)
            if match and match.group("label").strip():
                out[variable] = _entry(match.group("label").strip())
                break
    return out


def pattern_strategies_label() -> tuple[Strategy, ...]:
    return (extract_label_objects, extract_label_assignments)


def simplify_description(description: Any) -> str:
    """First three words of a description with any leading question word dropped."""
    if description is None or (isinstance(description, float) and math.isnan(description)):
        return "Variable"
    text = str(description).strip().lower()
    if not text:
        return "Variable"
    text = _QUESTION_START_RE.sub("", text).replace("?", "")
    label = " ".join(text.split()[:3])
    return label[:1].upper() + label[1:] if label else "Variable"


def default_labels_from(descriptions: Mapping[str, Any]) -> Callable[[Sequence[str]], dict[str, dict[str, str]]]:
    """Default builder deriving each missing label from its variable description."""

    def build(expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
        return {
            v: {"label": simplify_description(descriptions.get(v)), "interpretation": PLACEHOLDER_INTERPRETATION}
            for v in expected_ids
        }

    return build


def default_result_label(expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    return {v: {"label": v, "interpretation": PLACEHOLDER_INTERPRETATION} for v in expected_ids}


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def _collapse(text: str) -> str:
    return " ".join(text.split())


def strip_articles(text: str) -> str:
    return _collapse(_ARTICLE_RE.sub("", text))


def strip_prepositions(text: str) -> str:
    return _collapse(_PREPOSITION_RE.sub("", text))


def _case_pattern(word: str) -> str:
    if word == word.upper():
        return "upper"
    if word == word.lower():
        return "lower"
    if word[:1] == word[:1].upper():
        return "title"
    return "mixed"


def _restore_case(word: str, pattern: str) -> str:
    if pattern == "upper":
        return word.upper()
    if pattern == "lower":
        return word.lower()
    if pattern == "title":
        return word[:1].upper() + word[1:].lower()
    return word


def abbreviate_word(word: str, min_length: int = 8) -> str:
    """Cut a long word to a 4-character stem after dropping a common suffix, keeping its case pattern."""
    if len(word) < min_length:
        return word
    pattern = _case_pattern(word)
    root = _SUFFIX_RE.sub("", word.lower())
    return _restore_case(root[:4], pattern)


def _apply_case(words: list[str], case: str) -> list[str]:
    if case in ("lower", "snake"):
        return [w.lower() for w in words]
    if case in ("upper", "constant"):
        return [w.upper() for w in words]
    if case == "title":
        return [w[:1].upper() + w[1:] for w in words]
    if case == "sentence":
        return [w.lower() if i else w[:1].upper() + w[1:].lower() for i, w in enumerate(words)]
    if case == "camel":
        return [w.lower() for w in words[:1]] + [w[:1].upper() + w[1:].lower() for w in words[1:]]
    return list(words)


def format_label(
    label: str,
    *,
    sep: str = " ",
    case: str = "original",
    remove_articles: bool = False,
    remove_prepositions: bool = False,
    max_chars: int | None = None,
    abbreviate: bool = False,
    max_words: int | None = None,
) -> str:
    """
    Apply the post-processing steps to one label, in order: word filters, word cap,
    abbreviation, case, joining and finally the character cap.

    ``snake`` and ``constant`` cases join with ``_`` and ``camel`` joins with nothing,
    whatever ``sep`` says.
    """
    text = label or ""
    if remove_articles:
        text = strip_articles(text)
    if remove_prepositions:
        text = strip_prepositions(text)
    words = text.split()
    if max_words is not None:
        words = words[:max_words]
    if abbreviate:
        words = [abbreviate_word(w) for w in words]
    words = _apply_case(words, case)
    if case in ("snake", "constant"):
        sep = "_"
    elif case == "camel":
        sep = ""
    formatted = sep.join(words)
    if max_chars is not None:
        formatted = formatted[:max_chars]
    return formatted


CAPABILITIES = AnalysisCapabilitySet(
    analysis_type="label",
    component_label="variable",
    description="Short variable labels from descriptions",
    build_system_prompt=build_system_prompt_label,
    validate_parsed=validate_parsed_label,
    pattern_strategies=pattern_strategies_label,
    default_result=default_result_label,
)
