"""Classify free-form shell text into the handful of cases the orchestrator
treats specially.

:func:`classify` is total: anything it does not recognise is :class:`Plain`.
Each variant is a frozen dataclass so callers dispatch on the type.
"""

import re
import shlex
from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class ChangeDirectory:
    target: str


@dataclass(frozen=True)
class DependencyInstall:
    manager: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServerLaunch:
    port: int
    kind: str
    # Command to actually spawn; may differ from the input (e.g. flutter web mode).
    command: str = field(compare=False, default="")


@dataclass(frozen=True)
class Plain:
    pass


Command = Union[ChangeDirectory, DependencyInstall, ServerLaunch, Plain]


_OPERATORS = re.compile(r"&&|\|\||[;|`]|\$\(")
# Start of a shell segment, optionally preceded by VAR=value assignments.
_SEGMENT = r"(?:^|&&|\|\||;)\s*(?:[A-Za-z_][A-Za-z0-9_]*=\S*\s+)*"

_CD = re.compile(r"^cd(?:\s+(.*))?$", re.DOTALL)
_RESET = re.compile(r"\bgit\s+clone\b")

_INSTALLERS: list[tuple[str, re.Pattern]] = [
    ("npm", re.compile(r"^npm\s+(?:install|i|ci)\b(.*)$")),
    ("yarn", re.compile(r"^yarn(?:\s+(?:install|add)\b(.*))?$")),
    ("pnpm", re.compile(r"^pnpm\s+(?:install|i|add)\b(.*)$")),
    ("bun", re.compile(r"^bun\s+(?:install|i|add)\b(.*)$")),
    ("pip", re.compile(r"^(?:pip3?|python3?\s+-m\s+pip)\s+install\b(.*)$")),
    ("poetry", re.compile(r"^poetry\s+install\b(.*)$")),
    ("flutter", re.compile(r"^flutter\s+pub\s+get\b(.*)$")),
    ("composer", re.compile(r"^composer\s+install\b(.*)$")),
    ("bundle", re.compile(r"^bundle\s+install\b(.*)$")),
]

# (kind, pattern, default port). Order matters: first match wins.
_SERVERS: list[tuple[str, re.Pattern, int]] = [
    (kind, re.compile(_SEGMENT + pattern), port)
    for kind, pattern, port in [
        ("python-http", r"python3?\s+-m\s+http\.server(?:\s+(\d+))?", 8000),
        ("flutter", r"flutter\s+run\b", 8080),
        ("expo", r"(?:npx\s+)?expo\s+start\b", 8081),
        ("next", r"(?:npx\s+)?next\s+(?:dev|start)\b", 3000),
        ("vite", r"(?:npx\s+)?vite(?=\s*(?:$|&&|\|\||;)|\s+(?:dev|serve|preview)\b|\s+-)", 5173),
        ("npm", r"(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?(?:start|dev|serve|preview)\b", 3000),
        ("http-server", r"(?:npx\s+)?http-server\b", 8080),
        ("serve", r"npx\s+serve\b", 3000),
        ("flask", r"(?:python3?\s+-m\s+)?flask\s+run\b", 5000),
        ("uvicorn", r"(?:uvicorn|gunicorn)\s+\S+", 8000),
        ("php", r"php\s+-S\s+\S*?:(\d+)", 8000),
        ("node", r"node\s+\S*server\S*", 3000),
    ]
]

_PORT_FLAGS = [
    re.compile(r"--(?:web-)?port[=\s]+(\d+)"),
    re.compile(r"(?:^|\s)-p\s+(\d+)"),
    re.compile(r"\bPORT=(\d+)"),
    re.compile(r"(?:--bind|-b)[=\s]+\S*:(\d+)"),
]

_FLUTTER_RUN = re.compile(r"flutter\s+run\b")


def is_repository_reset(command: str) -> bool:
    """A fresh clone replaces the working tree, so the stored directory is stale."""
    return bool(_RESET.search(command))


def _split_args(text: str) -> tuple[str, ...]:
    try:
        return tuple(shlex.split(text))
    except ValueError:
        return tuple(text.split())


def _valid_port(value: str | None) -> int | None:
    if value is None:
        return None
    port = int(value)
    return port if 0 < port < 65536 else None


def extract_port(command: str, default: int) -> int:
    for pattern in _PORT_FLAGS:
        match = pattern.search(command)
        if match and (port := _valid_port(match.group(1))) is not None:
            return port
    return default


def _classify_cd(command: str) -> ChangeDirectory | None:
    match = _CD.match(command)
    if not match:
        return None
    rest = (match.group(1) or "").strip()
    if _OPERATORS.search(rest):
        return None
    args = _split_args(rest)
    if len(args) > 1:
        return None
    return ChangeDirectory(args[0] if args else "")


def _classify_install(command: str) -> DependencyInstall | None:
    if _OPERATORS.search(command):
        return None
    for manager, pattern in _INSTALLERS:
        match = pattern.match(command)
        if match:
            return DependencyInstall(manager, _split_args(match.group(1) or ""))
    return None


def _classify_server(command: str) -> ServerLaunch | None:
    for kind, pattern, default_port in _SERVERS:
        match = pattern.search(command)
        if not match:
            continue
        inline = _valid_port(match.group(1)) if pattern.groups else None
        port = inline or extract_port(command, default_port)
        spawn = command
        if kind == "flutter" and "web-server" not in command:
            spawn = _FLUTTER_RUN.sub(
                f"flutter run -d web-server --web-port={port} --web-hostname=0.0.0.0",
                command,
                count=1,
            )
        return ServerLaunch(port=port, kind=kind, command=spawn)
    return None


def classify(command: str) -> Command:
    command = command.strip()
    return (
        _classify_cd(command)
        or _classify_install(command)
        or _classify_server(command)
        or Plain()
    )
