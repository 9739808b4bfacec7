from __future__ import annotations

import logging

from ..errors import CapabilityNotImplemented
from .base import AnalysisCapabilitySet

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """
    Maps analysis-type ids to their capability sets.

    Populated at startup and treated as read-only afterwards; there is no
    unregistration. Re-registering an id replaces the previous set.
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, AnalysisCapabilitySet] = {}

    def register(self, type_id: str, capability_set: AnalysisCapabilitySet) -> None:
        if not type_id:
            raise ValueError("Analysis type id must be provided.")
        if not isinstance(capability_set, AnalysisCapabilitySet):
            raise TypeError(
                f"capability_set must be an AnalysisCapabilitySet, got {type(capability_set).__name__}"
            )
        if type_id in self._capabilities:
            logger.debug("Replacing capability set for analysis type '%s'", type_id)
        missing = capability_set.missing_operations()
        if missing:
            logger.debug("Analysis type '%s' registered without: %s", type_id, ", ".join(missing))
        self._capabilities[type_id] = capability_set

    def resolve(self, type_id: str) -> AnalysisCapabilitySet:
        try:
            return self._capabilities[type_id]
        except KeyError as exc:
            raise CapabilityNotImplemented(self._unknown_type_msg(type_id), analysis_type=type_id) from exc

    def is_registered(self, type_id: str) -> bool:
        return type_id in self._capabilities

    def list_types(self) -> list[str]:
        return sorted(self._capabilities.keys())

    def _unknown_type_msg(self, type_id: str) -> str:
        available = ", ".join(self.list_types()) or "none"
        return f"Analysis type '{type_id}' is not registered. Available analysis types: {available}"
