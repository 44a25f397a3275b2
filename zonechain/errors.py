from __future__ import annotations


class ZoneChainError(Exception):
    pass


class ConfigError(ZoneChainError):
    """Invalid or inconsistent configuration document. Ends the run."""


class ResourceError(ZoneChainError):
    """Working/output folders or store connections cannot be created or released. Ends the run."""


class LocationError(ZoneChainError):
    """A single location could not be processed. Logged, the run continues."""

    def __init__(self, location: str, message: str) -> None:
        super().__init__(message)
        self.location = location


class ExportError(ZoneChainError):
    """One category could not be written to one sink."""

    def __init__(self, category: str, message: str) -> None:
        super().__init__(message)
        self.category = category


class DataUnavailableError(ZoneChainError):
    """Optional input data is missing; callers substitute a placeholder."""
