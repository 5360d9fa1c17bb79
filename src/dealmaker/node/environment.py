from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, List, Optional

from dealmaker.errors import NodeCommandError, StartupError
from dealmaker.node.process import FilecoinProcess
from dealmaker.structured_logging import log_event


log = logging.getLogger("dealmaker.environment")


def devnet_genesis_url(network: str) -> str:
    return f"http://genesis.{network}.kittyhawk.wtf/genesis.car"


def devnet_faucet_url(network: str) -> str:
    return f"http://faucet.{network}.kittyhawk.wtf/tap"


def make_temp_workdir() -> str:
    return tempfile.mkdtemp(prefix="deal-maker")


class Devnet:
    """Node environment joined to a public devnet.

    Owns the node processes it creates and, when `owns_workdir` is set, the
    working directory itself. Use it as a context manager: teardown runs once
    on every exit path.
    """

    def __init__(
        self,
        *,
        network: str,
        workdir: str,
        binpath: str,
        owns_workdir: bool = False,
        genesis_url: str = "",
        faucet_url: str = "",
        faucet_timeout_s: float = 30.0,
        command_timeout_s: float = 120.0,
        daemon_start_timeout_s: float = 60.0,
        node_log_level: str = "4",
        node_log_json: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.network = network
        self.workdir = Path(workdir)
        self.binpath = binpath
        self.owns_workdir = bool(owns_workdir)
        self._genesis_url = genesis_url or devnet_genesis_url(network)
        self._faucet_url = faucet_url or devnet_faucet_url(network)
        self.faucet_timeout_s = float(faucet_timeout_s)
        self.command_timeout_s = float(command_timeout_s)
        self.daemon_start_timeout_s = float(daemon_start_timeout_s)
        self.node_log_level = node_log_level
        self.node_log_json = node_log_json
        self.cancel = cancel

        self.processes: List[FilecoinProcess] = []
        self._torn_down = False

    def genesis_car(self) -> str:
        return self._genesis_url

    def faucet_url(self) -> str:
        return self._faucet_url

    def new_process(self, name: str = "") -> FilecoinProcess:
        name = name or f"node{len(self.processes)}"
        repodir = self.workdir / name
        repodir.mkdir(parents=True, exist_ok=False)
        proc = FilecoinProcess(
            name=name,
            binpath=self.binpath,
            repodir=str(repodir),
            command_timeout_s=self.command_timeout_s,
            daemon_start_timeout_s=self.daemon_start_timeout_s,
            log_level=self.node_log_level,
            log_json=self.node_log_json,
            cancel=self.cancel,
        )
        self.processes.append(proc)
        return proc

    def init_and_start(self, proc: FilecoinProcess) -> None:
        """Initialise the node against the devnet genesis file, then start its daemon."""
        proc.init(genesis_file=self.genesis_car(), devnet=self.network)
        proc.start_daemon()

    def _tap_faucet(self, address: str) -> str:
        data = urllib.parse.urlencode({"target": address}).encode("utf-8")
        req = urllib.request.Request(url=self._faucet_url, data=data, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        try:
            with urllib.request.urlopen(req, timeout=self.faucet_timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                msg_cid = (resp.headers.get("Message-Cid") or "").strip()
                body = resp.read().decode("utf-8", errors="replace").strip()
        except urllib.error.HTTPError as e:
            raise StartupError("faucet_failed", f"faucet returned http {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise StartupError("faucet_failed", f"faucet unreachable: {e.reason}") from e

        if not (200 <= status < 300):
            raise StartupError("faucet_failed", f"faucet returned http {status}: {body[:300]}")
        if not msg_cid:
            raise StartupError("faucet_failed", f"faucet response missing Message-Cid header: {body[:300]}")
        return msg_cid

    def get_funds(self, proc: FilecoinProcess) -> Any:
        """Ask the faucet to fund the node's default address and wait for the message."""
        address = proc.default_address()
        msg_cid = self._tap_faucet(address)
        log_event(log, "faucet_tapped", node=proc.name, address=address, message_cid=msg_cid)
        try:
            return proc.message_wait(msg_cid)
        except NodeCommandError as e:
            raise StartupError("funding_failed", f"waiting for faucet message {msg_cid}: {e}") from e

    def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        for proc in reversed(self.processes):
            try:
                proc.stop_daemon()
            except OSError:
                log.exception("failed to stop node %s", proc.name)

        if self.owns_workdir:
            shutil.rmtree(self.workdir, ignore_errors=True)

        log_event(log, "environment_teardown", workdir=str(self.workdir), removed=self.owns_workdir)

    def __enter__(self) -> "Devnet":
        return self

    def __exit__(self, *exc: Optional[Any]) -> None:
        self.teardown()
