from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from .config import (
    PARAMETER_REGISTRY,
    InterpretConfig,
    InterpretationArgs,
    LLMArgs,
    OutputArgs,
    parameters_for,
    resolve_params,
    sampling_kwargs,
)
from .errors import LLMInvocationError, ParameterValidationError
from .interpreters import default_registry
from .interpreters.base import AnalysisCapabilitySet
from .interpreters.registry import CapabilityRegistry
from .llm import ChatClient, create_chat_client
from .models import ExtractedAnalysisData, InterpretationResult, PromptPair, RecoveredResult, ReportContext
from .recovery import recover_response
from .session import ChatSession
from .text import count_words
from .tokens import account_call, read_token_records

logger = logging.getLogger(__name__)


def _check_overrides(overrides: Mapping[str, Any]) -> None:
    unknown = sorted(set(overrides) - set(PARAMETER_REGISTRY))
    if unknown:
        raise ParameterValidationError(
            f"Unknown parameter(s): {', '.join(unknown)}. Available parameters: {', '.join(sorted(PARAMETER_REGISTRY))}"
        )


def _run_extract(
    capabilities: AnalysisCapabilitySet, fit_results: Any, variable_info: Any, params: Mapping[str, Any]
) -> ExtractedAnalysisData:
    check = capabilities.optional("validate_requirements")
    if check is not None:
        check(fit_results, variable_info, params)
    data = capabilities.require("extract")(fit_results, variable_info, params)
    if not isinstance(data, ExtractedAnalysisData):
        data = ExtractedAnalysisData(data)
    return data


def extract(
    fit_results: Any,
    variable_info: Any,
    analysis_type: str,
    config: Any = None,
    *,
    registry: CapabilityRegistry | None = None,
    **explicit: Any,
) -> ExtractedAnalysisData:
    """
    Normalize a fitted model of ``analysis_type`` into :class:`ExtractedAnalysisData`.

    Parameters resolve as explicit keyword > ``config`` field > registered default.
    Raises DataShapeError when the model or the metadata table has the wrong shape.
    """
    _check_overrides(explicit)
    capabilities = (registry or default_registry).resolve(analysis_type)
    params = resolve_params(parameters_for(analysis_type, "interpretation"), explicit, config)
    return _run_extract(capabilities, fit_results, variable_info, params)


def _word_limit_notice(recovered: RecoveredResult, word_limit: int, component_label: str) -> str | None:
    over = [
        (cid, count_words(entry.interpretation))
        for cid, entry in recovered.components.items()
        if entry.source != "placeholder"
    ]
    over = [(cid, n) for cid, n in over if n > word_limit]
    if not over:
        return None
    detail = ", ".join(f"{cid} ({n} words)" for cid, n in over)
    return f"{len(over)} {component_label} interpretation(s) exceed the {word_limit}-word target: {detail}"


def _resolve_analysis_type(
    analysis_type: str | None, session: ChatSession | None, configs: tuple[Any, ...]
) -> str:
    if analysis_type:
        return analysis_type
    if session is not None:
        return session.analysis_type
    for cfg in configs:
        nested = getattr(cfg, "interpretation_args", cfg)
        value = getattr(nested, "analysis_type", None)
        if value:
            return value
    raise ParameterValidationError(
        "analysis_type is required: pass it directly, via InterpretationArgs, or through a ChatSession."
    )


def interpret(
    fit_results: Any,
    variable_info: Any,
    analysis_type: str | None = None,
    *,
    session: ChatSession | None = None,
    chat_client: ChatClient | None = None,
    registry: CapabilityRegistry | None = None,
    llm_args: LLMArgs | None = None,
    interpretation_args: InterpretationArgs | None = None,
    output_args: OutputArgs | None = None,
    config: InterpretConfig | None = None,
    **overrides: Any,
) -> InterpretationResult:
    """
    Interpret a fitted model with an LLM and return the structured result.

    One attempt, no retries: extract, build prompts, call the LLM, recover the reply,
    update token accounting (and ``session``, in place), summarize diagnostics and
    render the report. Extraction, prompt and capability errors propagate unchanged;
    transport failures surface as LLMInvocationError. Keyword ``overrides`` take
    precedence over the args objects, which take precedence over registered defaults.
    """
    start = time.perf_counter()
    _check_overrides(overrides)
    configs = (llm_args, interpretation_args, output_args, config)
    analysis_type = _resolve_analysis_type(analysis_type, session, configs)
    if session is not None:
        session.ensure_type(analysis_type)
    capabilities = (registry or default_registry).resolve(analysis_type)

    interp_params = resolve_params(parameters_for(analysis_type, "interpretation"), overrides, *configs)
    llm_params = resolve_params(parameters_for(analysis_type, "llm"), overrides, *configs)
    out_params = resolve_params(parameters_for(analysis_type, "output"), overrides, *configs)
    silent = out_params["silent"]

    data = _run_extract(capabilities, fit_results, variable_info, interp_params)
    if silent <= 1:
        logger.info("Extracted %s data: %d components, %d variables", analysis_type, data.n_components, data.n_variables)

    if session is not None:
        system_prompt = session.system_prompt
    else:
        system_prompt = llm_params["system_prompt"] or capabilities.require("build_system_prompt")()
    main_prompt = capabilities.require("build_main_prompt")(
        data,
        data.get("variable_info"),
        llm_params["word_limit"],
        llm_params["additional_info"],
        guidelines=llm_params["interpretation_guidelines"],
    )
    prompts = PromptPair(system=system_prompt, main=main_prompt)

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
        logger.info("Requesting %s interpretation from %s (%s)", analysis_type, provider, model or "default")
    try:
        raw_response = client.chat(main_prompt, system_prompt=system_prompt, params=sampling_kwargs(llm_params["params"]))
    except LLMInvocationError:
        raise
    except Exception as exc:
        raise LLMInvocationError(
            f"LLM call for analysis type '{analysis_type}' failed ({provider}): {exc}"
        ) from exc
    raw_response = raw_response if isinstance(raw_response, str) else str(raw_response or "")
    after = read_token_records(client, include_system_prompt=True)
    exchange = read_token_records(client, include_system_prompt=False)
    if llm_params["echo"]:
        logger.debug("Raw response:\n%s", raw_response)

    validate = capabilities.require("validate_parsed")
    strategies = capabilities.require("pattern_strategies")()
    default = capabilities.require("default_result")
    recovered = recover_response(
        raw_response,
        data.component_names,
        validate=validate,
        strategies=strategies,
        default=default,
        threshold=interp_params["validation_threshold"],
    )
    postprocess = capabilities.optional("postprocess_result")
    if postprocess is not None:
        recovered = postprocess(recovered, data)
    if recovered.has_fallback:
        logger.warning(
            "Low-confidence %s interpretation(s) (%s tier): %s",
            capabilities.component_label,
            recovered.tier,
            ", ".join(recovered.fallback_ids),
        )

    accounting = account_call(before, after, exchange)
    if session is not None:
        session.add_tokens(accounting.delta)
        session.record_preamble(accounting.preamble_tokens)
        session.record_interpretation()

    notices: list[str] = []
    notice = _word_limit_notice(recovered, llm_params["word_limit"], capabilities.component_label)
    if notice:
        logger.info(notice)
        notices.append(notice)

    diagnostics = capabilities.require("build_diagnostics")(data)
    elapsed = time.perf_counter() - start
    context = ReportContext(
        data=data,
        recovered=recovered,
        diagnostics=diagnostics,
        tokens=accounting.per_call,
        llm_provider=provider,
        llm_model=model,
        elapsed_seconds=elapsed,
        notices=tuple(notices),
    )
    report = capabilities.require("build_report")(
        context,
        format=out_params["format"],
        heading_level=out_params["heading_level"],
        suppress_heading=out_params["suppress_heading"],
        max_line_length=out_params["max_line_length"],
    )
    if silent == 0:
        print(report)
    elif silent == 1:
        logger.info("Interpretation complete in %.1fs", elapsed)

    return InterpretationResult(
        analysis_type=analysis_type,
        data=data,
        recovered=recovered,
        diagnostics=diagnostics,
        tokens=accounting.per_call,
        report=report,
        elapsed_seconds=elapsed,
        prompts=prompts,
        raw_response=raw_response,
        preamble_tokens=accounting.preamble_tokens,
        notices=tuple(notices),
        llm_provider=provider,
        llm_model=model,
    )
