"""Short, readable variable labels generated from variable descriptions.

Labeling runs in two phases. The LLM proposes labels (shaped by ``label_type``,
``max_words``, ``max_chars`` and ``style_hint``), then deterministic post-processing
applies case, separator, word filters, abbreviation and length caps. The second phase
can be repeated with :func:`reformat_labels` without calling the LLM again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Mapping

import pandas as pd

from .config import (
    InterpretConfig,
    LabelingArgs,
    LLMArgs,
    OutputArgs,
    parameters_for,
    resolve_params,
    sampling_kwargs,
)
from .errors import LLMInvocationError, ParameterValidationError
from .interpreters import default_registry
from .interpreters.label import (
    LABEL_VALIDATION_THRESHOLD,
    build_main_prompt_label,
    default_labels_from,
    format_label,
    prepare_variable_info,
)
from .interpreters.registry import CapabilityRegistry
from .llm import ChatClient, create_chat_client
from .models import LabelingResult, PromptPair, TokenUsage
from .recovery import recover_response
from .report.label import build_report_label
from .session import ChatSession
from .tokens import account_call, read_token_records

logger = logging.getLogger(__name__)

LABEL_TYPE = "label"
# applied after the LLM call; the rest of the labeling group shapes the prompt
FORMAT_PARAMETERS = ("sep", "case", "remove_articles", "remove_prepositions", "max_chars", "abbreviate", "max_words")


def _check_overrides(overrides: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(overrides) - allowed)
    if unknown:
        raise ParameterValidationError(
            f"Unknown labeling parameter(s): {', '.join(unknown)}. Available parameters: {', '.join(sorted(allowed))}"
        )


def _render(
    labels: Mapping[str, str],
    fallback_ids: tuple[str, ...],
    label_type: str,
    formatting: Mapping[str, Any],
    tokens: TokenUsage,
    out_params: Mapping[str, Any],
    provider: str | None,
    model: str | None,
    reformatted: bool = False,
) -> str:
    return build_report_label(
        labels,
        label_type=label_type,
        formatting=formatting,
        tokens=tokens,
        llm_provider=provider,
        llm_model=model,
        fallback_ids=fallback_ids,
        reformatted=reformatted,
        format=out_params["format"],
        heading_level=out_params["heading_level"],
        suppress_heading=out_params["suppress_heading"],
        max_line_length=out_params["max_line_length"],
    )


def label_variables(
    variable_info: pd.DataFrame,
    *,
    session: ChatSession | None = None,
    chat_client: ChatClient | None = None,
    registry: CapabilityRegistry | None = None,
    llm_args: LLMArgs | None = None,
    labeling_args: LabelingArgs | None = None,
    output_args: OutputArgs | None = None,
    config: InterpretConfig | None = None,
    **overrides: Any,
) -> LabelingResult:
    """
    Ask the LLM for one label per variable and post-process the answers.

    ``variable_info`` needs a ``description`` column; ``variable`` is generated as
    ``V1..Vn`` when absent. A ``session`` must have been created for the ``"label"``
    type and is updated in place like an interpretation session. Every variable gets a
    label: ones the reply does not provide are derived from their descriptions.
    """
    start = time.perf_counter()
    _check_overrides(overrides, set(parameters_for(LABEL_TYPE)))
    configs = (llm_args, labeling_args, output_args, config)
    label_params = resolve_params(parameters_for(LABEL_TYPE, "labeling"), overrides, *configs)
    llm_params = resolve_params(parameters_for(LABEL_TYPE, "llm"), overrides, *configs)
    out_params = resolve_params(parameters_for(LABEL_TYPE, "output"), overrides, *configs)
    silent = out_params["silent"]

    info = prepare_variable_info(variable_info)
    variables = list(info["variable"])
    if session is not None:
        session.ensure_type(LABEL_TYPE)
    capabilities = (registry or default_registry).resolve(LABEL_TYPE)

    label_type = label_params["label_type"]
    if session is not None:
        system_prompt = session.system_prompt
    else:
        system_prompt = llm_params["system_prompt"] or capabilities.require("build_system_prompt")(
            label_type, label_params["style_hint"], label_params["max_chars"]
        )
    main_prompt = build_main_prompt_label(info, label_type, label_params["max_words"], label_params["max_chars"])

    if session is not None:
        client = session.client
    elif chat_client is not None:
        client = chat_client
    else:
        client = create_chat_client(llm_params["provider"], llm_params["model"])
    provider = getattr(client, "provider", None) or llm_params["provider"]
    model = getattr(client, "model", None) or llm_params["model"]

    if llm_params["echo"]:
        logger.debug("System prompt:\n%s", system_prompt)
        logger.debug("Main prompt:\n%s", main_prompt)

    before = read_token_records(client, include_system_prompt=True)
    if silent <= 1:
        logger.info("Requesting %s labels for %d variables from %s", label_type, len(variables), provider)
    try:
        raw_response = client.chat(main_prompt, system_prompt=system_prompt, params=sampling_kwargs(llm_params["params"]))
    except LLMInvocationError:
        raise
    except Exception as exc:
        raise LLMInvocationError(f"LLM call for variable labeling failed ({provider}): {exc}") from exc
    raw_response = raw_response if isinstance(raw_response, str) else str(raw_response or "")
    after = read_token_records(client, include_system_prompt=True)
    exchange = read_token_records(client, include_system_prompt=False)
    if llm_params["echo"]:
        logger.debug("Raw response:\n%s", raw_response)

    recovered = recover_response(
        raw_response,
        variables,
        validate=capabilities.require("validate_parsed"),
        strategies=capabilities.require("pattern_strategies")(),
        default=default_labels_from(dict(zip(info["variable"], info["description"]))),
        threshold=LABEL_VALIDATION_THRESHOLD,
    )
    if recovered.has_fallback:
        logger.warning("Low-confidence labels (%s tier): %s", recovered.tier, ", ".join(recovered.fallback_ids))

    accounting = account_call(before, after, exchange)
    if session is not None:
        session.add_tokens(accounting.delta)
        session.record_preamble(accounting.preamble_tokens)
        session.record_interpretation()

    parsed_labels = recovered.labels
    formatting = {name: label_params[name] for name in FORMAT_PARAMETERS}
    labels = {v: format_label(parsed_labels[v], **formatting) for v in variables}
    report = _render(labels, recovered.fallback_ids, label_type, formatting, accounting.per_call, out_params, provider, model)
    elapsed = time.perf_counter() - start
    if silent == 0:
        print(report)
    elif silent == 1:
        logger.info("Labeled %d variables in %.1fs", len(variables), elapsed)

    return LabelingResult(
        variable_info=info,
        parsed_labels=parsed_labels,
        labels=labels,
        recovered=recovered,
        tokens=accounting.per_call,
        report=report,
        elapsed_seconds=elapsed,
        prompts=PromptPair(system=system_prompt, main=main_prompt),
        raw_response=raw_response,
        label_type=label_type,
        formatting=formatting,
        preamble_tokens=accounting.preamble_tokens,
        llm_provider=provider,
        llm_model=model,
    )


def reformat_labels(
    result: LabelingResult,
    *,
    labeling_args: LabelingArgs | None = None,
    output_args: OutputArgs | None = None,
    **overrides: Any,
) -> LabelingResult:
    """Re-run post-processing on the recovered labels. Formatting options not given fall back to their defaults."""
    out_names = parameters_for(LABEL_TYPE, "output")
    _check_overrides(overrides, set(FORMAT_PARAMETERS) | set(out_names))
    formatting = resolve_params(FORMAT_PARAMETERS, overrides, labeling_args, output_args)
    out_params = resolve_params(out_names, overrides, labeling_args, output_args)
    labels = {v: format_label(label, **formatting) for v, label in result.parsed_labels.items()}
    report = _render(
        labels,
        result.recovered.fallback_ids,
        result.label_type,
        formatting,
        result.tokens,
        out_params,
        result.llm_provider,
        result.llm_model,
        reformatted=True,
    )
    return replace(result, labels=labels, formatting=formatting, report=report, reformatted=True)


__all__ = ["label_variables", "reformat_labels", "FORMAT_PARAMETERS"]
