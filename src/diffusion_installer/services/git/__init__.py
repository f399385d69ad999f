"""Git services."""

from .service import GitCloneOptions, GitService
from .tools import GitOperationResult, GitToolManager

__all__ = ["GitCloneOptions", "GitOperationResult", "GitService", "GitToolManager"]
