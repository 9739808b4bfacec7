"""Pluggable analysis families.

Each family supplies an :class:`AnalysisCapabilitySet`; ``default_registry`` holds the
built-in ones and is what the orchestrator consults unless another registry is passed.
"""

from .base import MANDATORY_OPERATIONS, OPTIONAL_OPERATIONS, AnalysisCapabilitySet
from .registry import CapabilityRegistry
from .fa import CAPABILITIES as FA_CAPABILITIES
from .gm import CAPABILITIES as GM_CAPABILITIES
from .label import CAPABILITIES as LABEL_CAPABILITIES


def build_default_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register("fa", FA_CAPABILITIES)
    registry.register("gm", GM_CAPABILITIES)
    registry.register("label", LABEL_CAPABILITIES)
    return registry


default_registry = build_default_registry()

__all__ = [
    "MANDATORY_OPERATIONS",
    "OPTIONAL_OPERATIONS",
    "AnalysisCapabilitySet",
    "CapabilityRegistry",
    "FA_CAPABILITIES",
    "GM_CAPABILITIES",
    "LABEL_CAPABILITIES",
    "build_default_registry",
    "default_registry",
]
