"""Hand-off points for file export and plotting.

Neither concern is implemented here. Each analysis type may supply ``export_payload``
and ``plot_payload`` operations that reduce a result to plain data; exporters and
plotters written elsewhere consume that data through the protocols below.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from .interpreters import default_registry
from .interpreters.registry import CapabilityRegistry
from .models import InterpretationResult

logger = logging.getLogger(__name__)


class ResultExporter(Protocol):
    def write(self, payload: dict[str, Any], path: Path) -> Path:
        ...


class ResultPlotter(Protocol):
    def plot(self, payload: dict[str, Any]) -> Any:
        ...


def build_export_payload(result: InterpretationResult, registry: CapabilityRegistry | None = None) -> dict[str, Any]:
    capabilities = (registry or default_registry).resolve(result.analysis_type)
    return capabilities.require("export_payload")(result)


def build_plot_payload(result: InterpretationResult, registry: CapabilityRegistry | None = None) -> dict[str, Any]:
    capabilities = (registry or default_registry).resolve(result.analysis_type)
    return capabilities.require("plot_payload")(result.data, result.recovered)


def export_result(
    result: InterpretationResult,
    exporter: ResultExporter,
    path: str | Path,
    registry: CapabilityRegistry | None = None,
) -> Path:
    payload = build_export_payload(result, registry)
    written = exporter.write(payload, Path(path))
    logger.info("Exported %s interpretation to %s", result.analysis_type, written)
    return written


def plot_result(result: InterpretationResult, plotter: ResultPlotter, registry: CapabilityRegistry | None = None) -> Any:
    return plotter.plot(build_plot_payload(result, registry))
