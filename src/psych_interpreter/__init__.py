"""LLM-assisted interpretation of fitted statistical models.

``interpret`` turns factor-analysis loadings or Gaussian-mixture cluster profiles into
named, described components, tolerating malformed LLM replies and tracking token cost
across calls and sessions. ``label_variables`` turns variable descriptions into short labels.
"""

from .config import (
    InterpretConfig,
    InterpretationArgs,
    LabelingArgs,
    LLMArgs,
    OutputArgs,
    OutputFormat,
    Provider,
    SamplingParams,
    resolve_param,
)
from .errors import (
    CapabilityNotImplemented,
    DataShapeError,
    InterpreterError,
    LLMInvocationError,
    ParameterValidationError,
    SessionTypeMismatch,
)
from .interpreters import AnalysisCapabilitySet, CapabilityRegistry, default_registry
from .llm import AnthropicChatClient, ChatClient, OpenAIChatClient, create_chat_client
from .models import (
    ComponentInterpretation,
    DiagnosticsSummary,
    ExtractedAnalysisData,
    InterpretationResult,
    LabelingResult,
    PromptPair,
    RecoveredResult,
    TokenUsage,
)
from .labeling import label_variables, reformat_labels
from .orchestrator import extract, interpret
from .recovery import recover_response
from .session import ChatSession

__version__ = "0.1.0"

__all__ = [
    "interpret",
    "extract",
    "label_variables",
    "reformat_labels",
    "recover_response",
    "ChatSession",
    "AnalysisCapabilitySet",
    "CapabilityRegistry",
    "default_registry",
    "ChatClient",
    "OpenAIChatClient",
    "AnthropicChatClient",
    "create_chat_client",
    "InterpretConfig",
    "InterpretationArgs",
    "LabelingArgs",
    "LLMArgs",
    "OutputArgs",
    "OutputFormat",
    "Provider",
    "SamplingParams",
    "resolve_param",
    "ComponentInterpretation",
    "DiagnosticsSummary",
    "ExtractedAnalysisData",
    "InterpretationResult",
    "LabelingResult",
    "PromptPair",
    "RecoveredResult",
    "TokenUsage",
    "InterpreterError",
    "CapabilityNotImplemented",
    "DataShapeError",
    "LLMInvocationError",
    "ParameterValidationError",
    "SessionTypeMismatch",
]
