"""Tests for command classification."""

from __future__ import annotations

import pytest

from workspace_host.classifier import (
    ChangeDirectory,
    DependencyInstall,
    Plain,
    ServerLaunch,
    classify,
    extract_port,
    is_repository_reset,
)


class TestChangeDirectory:
    @pytest.mark.parametrize(
        "command, target",
        [
            ("cd src", "src"),
            ("cd ..", ".."),
            ("cd /tmp/app", "/tmp/app"),
            ("  cd   src/components  ", "src/components"),
            ("cd 'my dir'", "my dir"),
            ("cd", ""),
            ("cd ~", "~"),
        ],
    )
    def test_plain_cd(self, command, target):
        assert classify(command) == ChangeDirectory(target)

    @pytest.mark.parametrize(
        "command",
        ["cd src && ls", "cd src; npm test", "cd src | cat", "cdk deploy", "cd a b"],
    )
    def test_compound_or_lookalike_is_not_cd(self, command):
        assert not isinstance(classify(command), ChangeDirectory)


class TestDependencyInstall:
    @pytest.mark.parametrize(
        "command, manager, args",
        [
            ("npm install", "npm", ()),
            ("npm i react", "npm", ("react",)),
            ("npm ci", "npm", ()),
            ("yarn", "yarn", ()),
            ("yarn add lodash", "yarn", ("lodash",)),
            ("pnpm install", "pnpm", ()),
            ("pip install -r requirements.txt", "pip", ("-r", "requirements.txt")),
            ("python3 -m pip install flask", "pip", ("flask",)),
            ("flutter pub get", "flutter", ()),
            ("bundle install", "bundle", ()),
        ],
    )
    def test_installers(self, command, manager, args):
        assert classify(command) == DependencyInstall(manager, args)

    def test_install_followed_by_server_is_a_launch(self):
        result = classify("npm install && npm run dev")
        assert isinstance(result, ServerLaunch)
        assert result.port == 3000


class TestServerLaunch:
    @pytest.mark.parametrize(
        "command, kind, port",
        [
            ("npm run dev", "npm", 3000),
            ("npm start", "npm", 3000),
            ("yarn dev", "npm", 3000),
            ("pnpm run serve", "npm", 3000),
            ("python3 -m http.server", "python-http", 8000),
            ("python -m http.server 8080", "python-http", 8080),
            ("npx vite", "vite", 5173),
            ("vite --port 4000", "vite", 4000),
            ("npx vite dev --host", "vite", 5173),
            ("vite && echo done", "vite", 5173),
            ("next dev -p 3001", "next", 3001),
            ("npx expo start", "expo", 8081),
            ("http-server -p 9090", "http-server", 9090),
            ("flask run", "flask", 5000),
            ("uvicorn app:app --port 8001", "uvicorn", 8001),
            ("php -S localhost:8888", "php", 8888),
            ("node server.js", "node", 3000),
            ("PORT=4200 npm start", "npm", 4200),
            ("npm run dev -- --port=5174", "npm", 5174),
        ],
    )
    def test_patterns_and_ports(self, command, kind, port):
        result = classify(command)
        assert isinstance(result, ServerLaunch)
        assert result.kind == kind
        assert result.port == port
        assert result.command == command

    def test_flutter_is_rewritten_to_web_server_mode(self):
        result = classify("flutter run")
        assert result == ServerLaunch(port=8080, kind="flutter")
        assert result.command == (
            "flutter run -d web-server --web-port=8080 --web-hostname=0.0.0.0"
        )

    def test_flutter_already_in_web_mode_is_kept(self):
        command = "flutter run -d web-server --web-port=8090"
        result = classify(command)
        assert result.port == 8090
        assert result.command == command

    def test_invalid_inline_port_falls_back_to_default(self):
        assert classify("python3 -m http.server 99999").port == 8000


@pytest.mark.parametrize(
    "command",
    [
        "ls -la",
        "git status",
        "echo npm run dev",
        "cat package.json",
        "npm test",
        "make",
        "vite build",
        "npx vite build",
        "vite optimize",
    ],
)
def test_everything_else_is_plain(command):
    assert classify(command) == Plain()


def test_extract_port_default():
    assert extract_port("npm start", 3000) == 3000
    assert extract_port("serve -p 4000", 3000) == 4000


def test_repository_reset_marker():
    assert is_repository_reset("git clone https://github.com/acme/app.git")
    assert is_repository_reset("rm -rf app && git  clone url app")
    assert not is_repository_reset("git status")
