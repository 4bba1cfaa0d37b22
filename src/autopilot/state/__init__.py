from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitClient, GitError
from autopilot.state.context import (
    ContextError,
    SourceKind,
    TaskContext,
    build_free_form_context,
    build_issue_context,
    context_from_artifacts,
)

__all__ = [
    "ArtifactDir",
    "ContextError",
    "GitClient",
    "GitError",
    "SourceKind",
    "TaskContext",
    "build_free_form_context",
    "build_issue_context",
    "context_from_artifacts",
]
