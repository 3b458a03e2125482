"""
Exception types raised by the exporter.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for exporter errors"""


class ConfigError(ExporterError):
    """Invalid configuration; fatal before any run starts"""


class ParseError(ExporterError):
    """A single log line could not be parsed"""

    def __init__(self, reason: str, line: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.line = line

    def __str__(self) -> str:
        if not self.line:
            return self.reason
        snippet = self.line if len(self.line) <= 120 else self.line[:117] + "..."
        return f"{self.reason}: {snippet!r}"


class PositionError(ExporterError):
    """The persisted position exists but cannot be decoded"""
