"""
Error taxonomy.

Every fatal condition in the pipeline is raised as one of the classes
below so the CLI can print a single classified line for it.
"""

from __future__ import annotations


class DecantError(Exception):
    """Base class for all pipeline failures."""

    kind = "error"

    def __init__(self, message: str, *, hint: str | None = None, output: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.output = output

    def __str__(self) -> str:
        return self.message


class EnvironmentCheckError(DecantError):
    """Missing host tool or unsupported architecture."""
    kind = "environment"


class ProvisioningError(DecantError):
    """Toolchain install failed, including the fallback attempt."""
    kind = "provisioning"


class DetectionError(DecantError):
    """Embedded native-module versions could not be determined."""
    kind = "detection"


class BuildError(DecantError):
    """Native module install or compilation failed."""
    kind = "build"


class ArchiveError(DecantError):
    """Archive extract/pack failure or missing expected member."""
    kind = "archive"
