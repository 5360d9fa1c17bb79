from __future__ import annotations

import urllib.error
from pathlib import Path
from typing import Any, Dict, List

import pytest

from dealmaker.errors import StartupError
from dealmaker.node.environment import Devnet, devnet_faucet_url, devnet_genesis_url


class _Resp:
    def __init__(self, status: int = 200, headers: Dict[str, str] | None = None, body: bytes = b"") -> None:
        self.status = status
        self.headers = headers or {}
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_Resp":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


class _Node:
    name = "client"

    def __init__(self) -> None:
        self.waited: List[str] = []
        self.stopped = 0

    def default_address(self) -> str:
        return "t1client"

    def message_wait(self, cid: str) -> dict:
        self.waited.append(cid)
        return {"ok": True}

    def stop_daemon(self) -> None:
        self.stopped += 1


def _devnet(tmp_path: Path, **kw) -> Devnet:
    kw.setdefault("network", "user")
    return Devnet(workdir=str(tmp_path / "wd"), binpath="/bin/false", **kw)


def test_devnet_urls_follow_network_name(tmp_path: Path) -> None:
    env = _devnet(tmp_path, network="nightly")
    assert env.genesis_car() == devnet_genesis_url("nightly") == "http://genesis.nightly.kittyhawk.wtf/genesis.car"
    assert env.faucet_url() == devnet_faucet_url("nightly") == "http://faucet.nightly.kittyhawk.wtf/tap"

    custom = _devnet(tmp_path, genesis_url="file:///g.car", faucet_url="http://localhost:9797/tap")
    assert custom.genesis_car() == "file:///g.car"
    assert custom.faucet_url() == "http://localhost:9797/tap"


def test_get_funds_taps_faucet_then_waits_for_message(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: Dict[str, Any] = {}

    def _urlopen(req, timeout=None):
        seen["url"] = req.full_url
        seen["data"] = req.data
        seen["method"] = req.get_method()
        return _Resp(headers={"Message-Cid": "bafymsg"})

    monkeypatch.setattr("dealmaker.node.environment.urllib.request.urlopen", _urlopen)
    node = _Node()

    _devnet(tmp_path).get_funds(node)  # type: ignore[arg-type]

    assert seen["url"] == "http://faucet.user.kittyhawk.wtf/tap"
    assert seen["method"] == "POST"
    assert seen["data"] == b"target=t1client"
    assert node.waited == ["bafymsg"]


def test_get_funds_without_message_cid_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("dealmaker.node.environment.urllib.request.urlopen", lambda req, timeout=None: _Resp(body=b"slow down"))

    with pytest.raises(StartupError) as ei:
        _devnet(tmp_path).get_funds(_Node())  # type: ignore[arg-type]
    assert ei.value.code == "faucet_failed"


def test_get_funds_unreachable_faucet_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _urlopen(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("dealmaker.node.environment.urllib.request.urlopen", _urlopen)

    with pytest.raises(StartupError) as ei:
        _devnet(tmp_path).get_funds(_Node())  # type: ignore[arg-type]
    assert ei.value.code == "faucet_failed"


def test_new_process_gets_its_own_repo(tmp_path: Path) -> None:
    (tmp_path / "wd").mkdir()
    env = _devnet(tmp_path)

    a = env.new_process("client")
    b = env.new_process()

    assert Path(a.repodir) == tmp_path / "wd" / "client"
    assert Path(b.repodir) == tmp_path / "wd" / "node1"
    assert Path(a.repodir).is_dir()


def test_teardown_runs_once_and_removes_owned_workdir(tmp_path: Path) -> None:
    (tmp_path / "wd").mkdir()
    node = _Node()

    with _devnet(tmp_path, owns_workdir=True) as env:
        env.processes.append(node)  # type: ignore[arg-type]
        env.new_process("client")

    env.teardown()

    assert node.stopped == 1
    assert not (tmp_path / "wd").exists()


def test_teardown_keeps_workdir_it_does_not_own(tmp_path: Path) -> None:
    (tmp_path / "wd").mkdir()

    with pytest.raises(RuntimeError):
        with _devnet(tmp_path) as env:
            env.new_process("client")
            raise RuntimeError("loop blew up")

    assert (tmp_path / "wd" / "client").is_dir()
