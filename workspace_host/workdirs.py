"""Per-repository working directories.

Requests are stateless, so ``cd`` continuity lives here: one
:class:`RepositoryContext` per repository id, created on first use with a
default directory under the project root. Nothing is persisted; the host is
torn down by the idle governor and a new one starts from scratch.
"""

import os
import re
import time
from dataclasses import dataclass, field

import structlog

from workspace_host.env import PROJECT_ROOT
from workspace_host.errors import PathError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_REPOSITORY = "default"
_REPOSITORY_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@dataclass
class RepositoryContext:
    repository_id: str
    working_directory: str
    created_at: float = field(default_factory=time.time)


def validate_repository_id(repository_id: str) -> str:
    if not _REPOSITORY_ID.match(repository_id or "") or repository_id in (".", ".."):
        raise ValidationError(f"Invalid repository id: {repository_id!r}")
    return repository_id


class DirectoryRegistry:
    """Maps repository id to its current working directory.

    Invariant: every stored directory exists and lies under ``project_root``.
    A context whose directory has disappeared is evicted the next time it is
    resolved and replaced by a fresh default.
    """

    def __init__(self, project_root: str = PROJECT_ROOT):
        os.makedirs(project_root, exist_ok=True)
        self.project_root = os.path.realpath(project_root)
        self._contexts: dict[str, RepositoryContext] = {}

    def default_directory(self, repository_id: str) -> str:
        return os.path.join(self.project_root, validate_repository_id(repository_id))

    def contains(self, path: str) -> bool:
        path = os.path.realpath(path)
        return os.path.commonpath([self.project_root, path]) == self.project_root

    def get(self, repository_id: str) -> RepositoryContext | None:
        return self._contexts.get(repository_id)

    def resolve(self, repository_id: str) -> str:
        context = self._contexts.get(repository_id)
        if context is not None:
            if os.path.isdir(context.working_directory):
                return context.working_directory
            logger.info(
                "Working directory vanished, evicting",
                repository_id=repository_id,
                path=context.working_directory,
            )
            del self._contexts[repository_id]

        path = self.default_directory(repository_id)
        os.makedirs(path, exist_ok=True)
        self._contexts[repository_id] = RepositoryContext(repository_id, path)
        logger.debug("Repository context created", repository_id=repository_id, path=path)
        return path

    def set(self, repository_id: str, path: str) -> str:
        """Store *path* as the working directory; relative paths start from the current one."""
        if not os.path.isabs(path):
            path = os.path.join(self.resolve(repository_id), path)
        path = os.path.normpath(path)
        if not os.path.isdir(path):
            raise PathError(f"{path}: No such file or directory")
        if not self.contains(path):
            raise PathError(f"{path}: Outside of project root")

        context = self._contexts.get(repository_id)
        if context is None:
            validate_repository_id(repository_id)
            self._contexts[repository_id] = RepositoryContext(repository_id, path)
        else:
            context.working_directory = path
        return path

    def evict(self, repository_id: str) -> bool:
        evicted = self._contexts.pop(repository_id, None) is not None
        if evicted:
            logger.info("Repository context evicted", repository_id=repository_id)
        return evicted

    def change_directory(self, repository_id: str, target: str) -> str:
        """Apply ``cd target`` for *repository_id* and return the new directory.

        ``..``, absolute and relative targets are accepted; an empty target
        or ``~`` returns to the repository's default directory. On failure
        the stored directory is left unchanged and :class:`PathError` is
        raised with a POSIX-style message.
        """
        current = self.resolve(repository_id)

        if target in ("", "~"):
            home = self.default_directory(repository_id)
            os.makedirs(home, exist_ok=True)
            return self.set(repository_id, home)
        if target == "-":
            raise PathError("cd: -: OLDPWD not set")
        if target.startswith("~/"):
            target_path = os.path.join(self.default_directory(repository_id), target[2:])
        else:
            target_path = os.path.join(current, target)

        candidate = os.path.normpath(target_path)
        if not os.path.isdir(candidate):
            if os.path.exists(candidate):
                raise PathError(f"cd: {target}: Not a directory")
            raise PathError(f"cd: {target}: No such file or directory")
        if not self.contains(candidate):
            raise PathError(f"cd: {target}: Permission denied")
        return self.set(repository_id, candidate)

    def __len__(self) -> int:
        return len(self._contexts)
