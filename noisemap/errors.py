from __future__ import annotations


class NoiseMapError(Exception):
    pass


class GeometryError(NoiseMapError, ValueError):
    """Invalid input geometry, ``feature_id`` locates it among its ``kind``."""

    def __init__(self, message: str, feature_id: int | None = None, kind: str = "feature"):
        if feature_id is not None:
            message = f"{kind} {feature_id}: {message}"
        super().__init__(message)
        self.feature_id = feature_id
        self.kind = kind


class ConfigurationError(NoiseMapError, ValueError):
    pass
