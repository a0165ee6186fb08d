from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest

import generate_master
from generate_master import Config


class PluginTree:
    """Builds a synthetic plugins/<channel>/<name> layout under a temporary root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def plugin_dir(self, channel: str, name: str) -> Path:
        directory = self.root / channel / name
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def write_json(self, path: Path, payload: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    def manifest(self, channel: str, name: str, **fields: Any) -> Path:
        payload = {"InternalName": name, "Name": name, "DalamudApiLevel": 9}
        payload.update(fields)
        return self.write_json(self.plugin_dir(channel, name) / f"{name}.json", payload)

    def commits(self, channel: str, name: str, *entries: tuple[str, str, str]) -> Path:
        payload = [
            {"sha": sha, "commit": {"author": {"name": author}, "message": message}}
            for sha, author, message in entries
        ]
        return self.write_json(self.plugin_dir(channel, name) / "commits.json", payload)

    def event(self, channel: str, name: str, html_url: str) -> Path:
        payload = {"repository": {"html_url": html_url}}
        return self.write_json(self.plugin_dir(channel, name) / "event.json", payload)

    def archive(self, channel: str, name: str, mtime: int) -> Path:
        path = self.plugin_dir(channel, name) / "latest.zip"
        path.write_bytes(b"PK\x05\x06" + b"\x00" * 18)
        os.utime(path, (mtime, mtime))
        return path


@pytest.fixture
def plugin_tree(tmp_path: Path) -> PluginTree:
    return PluginTree(tmp_path / "plugins")


@pytest.fixture
def config(plugin_tree: PluginTree) -> Config:
    return Config(
        hosting_domain="plugins.example.com",
        enable_download_counter=False,
        plugins_dir=plugin_tree.root,
    )


class DummyResponse:
    def __init__(self, payload: Any = None, error: Exception | None = None) -> None:
        self._payload = payload
        self._error = error
        self.status_code = 200

    def json(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._payload


class DownloadsEndpoint:
    """Stands in for requests.get, recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.payload: Any = {}
        self.error: Exception | None = None
        self.transport_error: Exception | None = None

    def __call__(self, url: str, headers: dict[str, str] | None = None, **_: Any) -> DummyResponse:
        self.calls.append((url, dict(headers or {})))
        if self.transport_error is not None:
            raise self.transport_error
        return DummyResponse(self.payload, self.error)


@pytest.fixture
def downloads_endpoint(monkeypatch) -> DownloadsEndpoint:
    endpoint = DownloadsEndpoint()
    monkeypatch.setattr(generate_master.requests, "get", endpoint)
    return endpoint
