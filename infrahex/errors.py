"""
Exception hierarchy.

Grid and rasterizer errors are per-feature: the orchestrator logs them and
moves on. ``AlreadyFinalized`` signals misuse of the aggregator and always
propagates.
"""

from __future__ import annotations

from typing import Any, Optional


class InfraHexError(Exception):
    """Base class for all infrahex errors."""


class OutOfDomain(InfraHexError):
    """A coordinate lies outside the supported grid extent."""

    def __init__(self, x: float, y: float, extent: Any) -> None:
        self.x = x
        self.y = y
        self.extent = extent
        super().__init__(f"Coordinate ({x!r}, {y!r}) outside extent {extent}")


class InvalidPolyline(InfraHexError):
    """Fewer than two coordinates, or non-finite coordinate values."""


class AlreadyFinalized(InfraHexError):
    """Aggregator used after ``finalize``."""


class GeometryError(InfraHexError):
    """Unsupported or malformed input geometry."""


class ApiError(InfraHexError):
    """A remote data source returned an error or an unusable payload."""


class ConfigError(InfraHexError):
    """Missing or invalid configuration (e.g. an unset API key)."""


class FeatureError(InfraHexError):
    """A single feature was rejected; carries its id and source metadata."""

    def __init__(
        self,
        feature_id: str,
        cause: Exception,
        source: Optional[Any] = None,
    ) -> None:
        self.feature_id = feature_id
        self.cause = cause
        self.source = source
        super().__init__(f"Feature {feature_id!r} rejected: {cause}")
