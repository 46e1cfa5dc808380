"""Shared fixtures for the workspace-host test suite."""

from __future__ import annotations

import asyncio
import os
import socket
import sys
from typing import Awaitable, Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from workspace_host.idle import IdleGovernor
from workspace_host.main import create_app
from workspace_host.ports import PortScanner
from workspace_host.supervisor import ProcessSupervisor
from workspace_host.workdirs import DirectoryRegistry

PUBLIC_URL = "https://gateway.test"


class FakeScanner(PortScanner):
    """Port scanner whose 'kernel table' is a plain set."""

    def __init__(self, ports: set[int] | None = None):
        super().__init__(public_url=PUBLIC_URL, tables=())
        self.ports: set[int] = set(ports or ())
        self.scans = 0

    async def listening_ports(self) -> set[int]:
        self.scans += 1
        return set(self.ports)


@pytest.fixture
def project_root(tmp_path) -> str:
    root = tmp_path / "projects"
    root.mkdir()
    return os.path.realpath(root)


@pytest.fixture
def directories(project_root: str) -> DirectoryRegistry:
    return DirectoryRegistry(project_root)


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
async def supervisor(tmp_path):
    supervisor = ProcessSupervisor(log_dir=str(tmp_path / "logs"), stop_grace=2.0)
    await supervisor.open()
    yield supervisor
    await supervisor.close()


@pytest.fixture
def idle() -> IdleGovernor:
    return IdleGovernor(window=0, on_expire=lambda: None)


@pytest.fixture
def app(directories, scanner, idle, tmp_path):
    return create_app(
        directories=directories,
        supervisor=ProcessSupervisor(log_dir=str(tmp_path / "logs"), stop_grace=2.0),
        scanner=scanner,
        idle=idle,
    )


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as client:
        yield client


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[bool]]:
    async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True

    return _wait_until


@pytest.fixture
def free_port() -> int:
    """A TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def python3_on_path(monkeypatch):
    """Make ``python3`` resolve to the interpreter running the tests."""
    bin_dir = os.path.dirname(sys.executable)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
