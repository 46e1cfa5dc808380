"""Full previews: build the working tree into an image and roll it out as a
managed container revision with a durable URL.

Only the orchestration lives here. The build service and the container
platform are reached through a :class:`PreviewDeployer` supplied by the
deployment (``app.state.preview_deployer``).
"""

import asyncio
import io
import os
import tarfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog

from workspace_host.errors import DeploymentError

logger = structlog.get_logger(__name__)

EXCLUDED_DIRECTORIES = frozenset({".git", "node_modules", "__pycache__", ".venv"})

BUILD_SUCCESS = "SUCCESS"
BUILD_FAILED_STATES = frozenset({"FAILURE", "INTERNAL_ERROR", "TIMEOUT", "CANCELLED", "EXPIRED"})


@dataclass
class ResourceLimits:
    cpu: str = "1"
    memory: str = "512Mi"
    max_instances: int = 1


@dataclass
class BuildStatus:
    state: str
    image: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class DeploymentResult:
    build_id: str
    image: str
    url: str


class PreviewDeployer(ABC):
    """Image-build service plus managed-container revisions."""

    @abstractmethod
    async def submit_build(self, source_archive: bytes) -> str:
        """Submit a gzip tarball for building and return the build id."""

    @abstractmethod
    async def poll(self, build_id: str) -> BuildStatus:
        """Return the current status of *build_id*."""

    @abstractmethod
    async def create_or_update_revision(
        self, image: str, port: int, resources: ResourceLimits
    ) -> str:
        """Roll out *image* listening on *port* and return the service URL."""


def archive_source(directory: str) -> bytes:
    """Pack *directory* into an in-memory ``.tar.gz``, skipping VCS and dependency folders."""

    def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if EXCLUDED_DIRECTORIES.intersection(info.name.split("/")):
            return None
        return info

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name in sorted(os.listdir(directory)):
            archive.add(os.path.join(directory, name), arcname=name, filter=_filter)
    return buffer.getvalue()


async def deploy_full_preview(
    deployer: PreviewDeployer,
    directory: str,
    port: int,
    resources: Optional[ResourceLimits] = None,
    poll_interval: float = 5.0,
    timeout: float = 15 * 60,
) -> DeploymentResult:
    """Archive, build and roll out *directory*; raise :class:`DeploymentError` on failure."""
    resources = resources or ResourceLimits()

    archive = await asyncio.to_thread(archive_source, directory)
    logger.info("Submitting preview build", directory=directory, size=len(archive))
    build_id = await deployer.submit_build(archive)

    deadline = time.monotonic() + timeout
    while True:
        status = await deployer.poll(build_id)
        if status.state == BUILD_SUCCESS:
            break
        if status.state in BUILD_FAILED_STATES:
            raise DeploymentError(
                f"Build {build_id} ended in state {status.state}"
                + (f": {status.detail}" if status.detail else "")
            )
        if time.monotonic() >= deadline:
            raise DeploymentError(f"Build {build_id} did not finish within {timeout:g} seconds")
        await asyncio.sleep(poll_interval)

    if not status.image:
        raise DeploymentError(f"Build {build_id} succeeded without producing an image")

    url = await deployer.create_or_update_revision(status.image, port, resources)
    logger.info("Preview deployed", build_id=build_id, image=status.image, url=url)
    return DeploymentResult(build_id=build_id, image=status.image, url=url)
