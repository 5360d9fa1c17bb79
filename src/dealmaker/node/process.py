from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import IO, Any, BinaryIO, Dict, List, Optional

from pydantic import ValidationError

from dealmaker.errors import Cancelled, NodeCommandError
from dealmaker.node.codec import AskStreamDecoder
from dealmaker.node.schemas import DealResponse, ProtocolParams, cid_from_wire
from dealmaker.structured_logging import log_event


log = logging.getLogger("dealmaker.node")

_CHUNK_SIZE = 1024 * 256


def _read_tmp(fh: IO[bytes], limit: int = 4000) -> str:
    fh.seek(0)
    return fh.read().decode("utf-8", errors="replace").strip()[-limit:]


class _Watchdog:
    """Kill a short-lived child once its deadline passes or `cancel` is set.

    Killing the child closes its pipes, so a reader or writer blocked on them
    returns. `reason` is "timeout" or "cancelled" once the watchdog fired.
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        *,
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
        poll_s: float = 0.1,
    ) -> None:
        self._proc = proc
        self._timeout_s = float(timeout_s)
        self._cancel = cancel
        self._poll_s = float(poll_s)
        self._done = threading.Event()
        self._t = threading.Thread(target=self._run, name="dealmaker-watchdog", daemon=True)
        self.reason = ""

    def start(self) -> "_Watchdog":
        self._t.start()
        return self

    def _run(self) -> None:
        deadline = time.monotonic() + self._timeout_s
        while not self._done.is_set() and self._proc.poll() is None:
            if self._cancel is not None and self._cancel.is_set():
                self._fire("cancelled")
                return
            if time.monotonic() >= deadline:
                self._fire("timeout")
                return
            self._done.wait(self._poll_s)

    def _fire(self, reason: str) -> None:
        self.reason = reason
        try:
            self._proc.kill()
        except OSError:
            pass

    def stop(self) -> str:
        self._done.set()
        if self._t.is_alive() and self._t is not threading.current_thread():
            self._t.join(timeout=5.0)
        return self.reason


class FilecoinProcess:
    """One go-filecoin node driven through its command line.

    Every command runs as `<binpath> <args> --repodir=<repodir>`; JSON commands
    add `--enc=json`. The daemon is a long-lived child process; all other
    commands are short-lived clients of it.
    """

    def __init__(
        self,
        *,
        name: str,
        binpath: str,
        repodir: str,
        command_timeout_s: float = 120.0,
        daemon_start_timeout_s: float = 60.0,
        log_level: str = "4",
        log_json: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.name = name
        self.binpath = binpath
        self.repodir = str(repodir)
        self.command_timeout_s = float(command_timeout_s)
        self.daemon_start_timeout_s = float(daemon_start_timeout_s)
        self.log_level = str(log_level)
        self.log_json = bool(log_json)
        self.cancel = cancel

        self._daemon: Optional[subprocess.Popen] = None
        self._daemon_log: Optional[IO[bytes]] = None

    # ----------------------------
    # Command plumbing
    # ----------------------------

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["GO_FILECOIN_LOG_LEVEL"] = self.log_level
        env["GO_FILECOIN_LOG_JSON"] = "1" if self.log_json else "0"
        return env

    def _argv(self, args: List[str], *, json_enc: bool) -> List[str]:
        argv = [self.binpath, *args, f"--repodir={self.repodir}"]
        if json_enc:
            argv.append("--enc=json")
        return argv

    def run(self, args: List[str], *, stdin: Optional[BinaryIO] = None, json_enc: bool = True) -> str:
        """Run a command to completion and return its stdout.

        stdin, when given, is streamed to the child in fixed-size chunks so
        large payloads are never held in memory at once.
        """
        argv = self._argv(args, json_enc=json_enc)
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    env=self._env(),
                )
            except OSError as e:
                raise NodeCommandError("spawn_failed", f"failed to run {self.binpath}: {e}", command=argv) from e

            watchdog = self._watch(proc)
            try:
                if stdin is not None:
                    self._feed(proc, stdin)
                rc = proc.wait()
            finally:
                reason = watchdog.stop()
            self._raise_if_interrupted(reason, args, argv)

            stderr = _read_tmp(err)
            if rc != 0:
                raise NodeCommandError(
                    "command_failed",
                    f"{' '.join(args)} exited {rc}: {stderr}",
                    command=argv,
                    returncode=rc,
                    stderr=stderr,
                )
            out.seek(0)
            return out.read().decode("utf-8", errors="replace")

    def _watch(self, proc: subprocess.Popen) -> _Watchdog:
        return _Watchdog(proc, timeout_s=self.command_timeout_s, cancel=self.cancel).start()

    def _raise_if_interrupted(self, reason: str, args: List[str], argv: List[str]) -> None:
        if reason == "cancelled":
            raise Cancelled(" ".join(args))
        if reason == "timeout":
            raise NodeCommandError(
                "command_timeout",
                f"{' '.join(args)} timed out after {self.command_timeout_s}s",
                command=argv,
            )

    def _feed(self, proc: subprocess.Popen, stdin: BinaryIO) -> None:
        assert proc.stdin is not None
        try:
            while True:
                chunk = stdin.read(_CHUNK_SIZE)
                if not chunk:
                    break
                proc.stdin.write(chunk)
        except BrokenPipeError:
            # Child exited early or was killed; the exit status or the
            # watchdog carries the reason.
            pass
        finally:
            try:
                proc.stdin.close()
            except BrokenPipeError:
                pass

    def run_json(self, args: List[str], *, stdin: Optional[BinaryIO] = None) -> Any:
        raw = self.run(args, stdin=stdin, json_enc=True).strip()
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise NodeCommandError("invalid_output", f"{' '.join(args)}: invalid json output: {e}") from e

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def init(self, *, genesis_file: str = "", devnet: str = "") -> None:
        args = ["init"]
        if genesis_file:
            args.append(f"--genesisfile={genesis_file}")
        if devnet:
            args.append(f"--devnet-{devnet}")
        self.run(args, json_enc=False)
        log_event(log, "node_initialized", node=self.name, repodir=self.repodir)

    @property
    def daemon_running(self) -> bool:
        return self._daemon is not None and self._daemon.poll() is None

    def start_daemon(self) -> None:
        if self.daemon_running:
            return

        argv = self._argv(["daemon"], json_enc=False)
        Path(self.repodir).mkdir(parents=True, exist_ok=True)
        self._daemon_log = open(Path(self.repodir) / "daemon.log", "ab")
        try:
            self._daemon = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=self._daemon_log,
                stderr=subprocess.STDOUT,
                env=self._env(),
            )
        except OSError as e:
            self._close_daemon_log()
            raise NodeCommandError("spawn_failed", f"failed to start daemon: {e}", command=argv) from e

        waiter = self.cancel or threading.Event()
        deadline = time.time() + self.daemon_start_timeout_s
        last_err: Optional[NodeCommandError] = None
        while time.time() < deadline:
            rc = self._daemon.poll()
            if rc is not None:
                self._daemon = None
                self._close_daemon_log()
                raise NodeCommandError("daemon_exited", f"daemon exited during startup with {rc}", command=argv, returncode=rc)
            try:
                self.id()
            except NodeCommandError as e:
                last_err = e
                if waiter.wait(0.5):
                    self.stop_daemon()
                    raise Cancelled("daemon_start") from e
                continue
            log_event(log, "node_daemon_started", node=self.name, pid=self._daemon.pid)
            return

        self.stop_daemon()
        raise NodeCommandError(
            "daemon_start_timeout",
            f"daemon did not answer within {self.daemon_start_timeout_s}s: {last_err}",
            command=argv,
        )

    def stop_daemon(self) -> None:
        proc = self._daemon
        self._daemon = None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            log_event(log, "node_daemon_stopped", node=self.name, returncode=proc.returncode)
        self._close_daemon_log()

    def _close_daemon_log(self) -> None:
        fh = self._daemon_log
        self._daemon_log = None
        if fh is not None:
            fh.close()

    # ----------------------------
    # Queries
    # ----------------------------

    def id(self) -> Dict[str, Any]:
        out = self.run_json(["id"])
        return out if isinstance(out, dict) else {}

    def protocol(self) -> ProtocolParams:
        out = self.run_json(["protocol"])
        try:
            return ProtocolParams.model_validate(out)
        except ValidationError as e:
            raise NodeCommandError("invalid_output", f"protocol: unexpected shape: {e}") from e

    def default_address(self) -> str:
        out = self.run_json(["address", "ls"])
        addrs = out.get("Addresses") if isinstance(out, dict) else out
        if isinstance(addrs, list):
            for a in addrs:
                s = str(a).strip()
                if s:
                    return s
        raise NodeCommandError("no_wallet_address", f"node {self.name} has no wallet address")

    def message_wait(self, message_cid: str) -> Any:
        return self.run_json(["message", "wait", message_cid])

    # ----------------------------
    # Storage client
    # ----------------------------

    def client_list_asks(self) -> AskStreamDecoder:
        """Open a streaming ask listing. Raises NodeCommandError if the command cannot start."""
        argv = self._argv(["client", "list-asks"], json_enc=True)
        err = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=err,
                text=True,
                env=self._env(),
            )
        except OSError as e:
            err.close()
            raise NodeCommandError("spawn_failed", f"failed to list asks: {e}", command=argv) from e

        # Bounds the whole listing, including reads blocked on a silent child.
        watchdog = self._watch(proc)

        def _finish() -> None:
            rc = proc.wait()
            self._raise_if_interrupted(watchdog.stop(), ["client", "list-asks"], argv)
            if rc != 0:
                stderr = _read_tmp(err)
                raise NodeCommandError(
                    "command_failed",
                    f"client list-asks exited {rc}: {stderr}",
                    command=argv,
                    returncode=rc,
                    stderr=stderr,
                )

        def _close() -> None:
            watchdog.stop()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            err.close()

        assert proc.stdout is not None
        return AskStreamDecoder(proc.stdout, on_eof=_finish, on_close=_close)

    def client_import(self, data: BinaryIO) -> str:
        out = self.run_json(["client", "import"], stdin=data)
        cid = cid_from_wire(out)
        if not cid:
            raise NodeCommandError("invalid_output", f"client import returned no cid: {out!r}")
        return cid

    def client_propose_storage_deal(self, miner: str, data_cid: str, ask_id: int, duration: int) -> DealResponse:
        out = self.run_json(["client", "propose-storage-deal", miner, data_cid, str(int(ask_id)), str(int(duration))])
        return self._deal_response(out, "client propose-storage-deal")

    def client_query_storage_deal(self, proposal_cid: str) -> DealResponse:
        out = self.run_json(["client", "query-storage-deal", proposal_cid])
        return self._deal_response(out, "client query-storage-deal")

    @staticmethod
    def _deal_response(out: Any, what: str) -> DealResponse:
        try:
            return DealResponse.model_validate(out)
        except ValidationError as e:
            raise NodeCommandError("invalid_output", f"{what}: unexpected shape: {e}") from e
