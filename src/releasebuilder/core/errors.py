"""Release builder exception hierarchy.

Every failure the orchestrator surfaces derives from ReleaseError so the
CLI can render one wrapped chain and exit non-zero.
"""

from typing import Optional


class ReleaseError(Exception):
    """Base exception for all release builder errors."""


class ConfigError(ReleaseError):
    """Invalid input manifest or flags. Raised before any side effect."""


class ResolveError(ReleaseError):
    """A dependency could not be fetched or its version could not be resolved."""

    def __init__(self, message: str = "", *, repo: Optional[str] = None) -> None:
        super().__init__(message)
        self.repo = repo


class TagConflictError(ReleaseError):
    """A tag already exists and points at a different commit than HEAD."""

    def __init__(self, tag: str, existing: str, head: str) -> None:
        super().__init__(
            f"tag {tag} already exists, retagging would move from {existing} to {head}"
        )
        self.tag = tag
        self.existing = existing
        self.head = head


class ExternalToolError(ReleaseError):
    """An external command exited non-zero."""

    def __init__(self, command: str, cwd: Optional[str], returncode: int, stderr: str = "") -> None:
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"command `{command}` (cwd={cwd or '.'}) exited {returncode}{detail}")
        self.command = command
        self.cwd = cwd
        self.returncode = returncode
        self.stderr = stderr


class BuildError(ReleaseError):
    """A build step failed."""


class VariableNotFoundError(ReleaseError):
    """A Makefile does not assign the requested variable."""

    def __init__(self, name: str, path: str) -> None:
        super().__init__(f"variable {name} not found in {path}")
        self.name = name
        self.path = path


class ChartError(BuildError):
    """A chart could not be stamped for release."""


class PublishError(ReleaseError):
    """Pushing an artifact to an external distribution point failed."""


class ConflictExhaustedError(PublishError):
    """Optimistic concurrency retries ran out."""


class BranchError(ReleaseError):
    """A branch-cut step could not be applied."""


class ScanError(ReleaseError):
    """The vulnerability scanner reported findings or could not be reached."""


class ValidationError(ReleaseError):
    """A built release failed one or more checks."""
