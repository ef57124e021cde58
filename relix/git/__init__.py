"""Git queries used between release steps.

Usage:
    from relix.git import Repository

    repo = Repository(Path("/path/to/repo"))
    if not repo.is_clean():
        ...
"""

from .repository import GitError, GitStatus, Repository, RepositoryProtocol, StatusEntry

__all__ = [
    "GitError",
    "GitStatus",
    "Repository",
    "RepositoryProtocol",
    "StatusEntry",
]
