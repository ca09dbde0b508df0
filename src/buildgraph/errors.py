"""Error taxonomy for build and test runs.

Everything raised on purpose by buildgraph derives from ``BuildError`` so the
CLI can turn it into a non-zero exit without a traceback.
"""

from __future__ import annotations


class BuildError(Exception):
    """Base class for orchestration failures."""


class ConfigError(BuildError):
    pass


class TaskGraphError(BuildError):
    """Unknown task, duplicate registration or dependency cycle."""


class DiscoveryError(BuildError):
    """The addon source directory could not be enumerated."""


class PipelineError(BuildError):
    """A collaborator (bundler, command) failed for one artifact."""

    def __init__(self, message: str, identifier: str | None = None):
        super().__init__(message)
        self.identifier = identifier


class MapResolutionError(BuildError):
    """A source map chain is missing, malformed or incomplete."""

    def __init__(self, message: str, map_path=None):
        super().__init__(message)
        self.map_path = map_path


class SourceMapFormatError(ValueError):
    """Raised by the codec for maps or mappings it cannot parse."""


class TestSelectionError(BuildError):
    __test__ = False


class TestExecutionError(BuildError):
    """The test process exited with a non-zero status."""

    __test__ = False

    def __init__(self, message: str, returncode: int = 1):
        super().__init__(message)
        self.returncode = returncode


class UploadError(BuildError):
    """Coverage upload failed. Never fatal for the run it reports on."""
