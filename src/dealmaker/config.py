from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dealmaker.errors import StartupError


DEFAULT_NETWORK = "user"
DEFAULT_IDLE_INTERVAL_S = 60.0
DEFAULT_DEAL_DURATION = 256
BINARY_NAME = "go-filecoin"


@dataclass(frozen=True, slots=True)
class DealMakerConfig:
    network: str
    workdir: str
    binpath: str
    miners: Tuple[str, ...]

    # Loop pacing
    idle_interval_s: float = DEFAULT_IDLE_INTERVAL_S
    once: bool = False

    # Deal terms / waiting
    deal_duration: int = DEFAULT_DEAL_DURATION
    deal_poll_s: float = 5.0
    deal_timeout_s: float = 0.0  # 0 = wait until terminal

    # Node process knobs
    command_timeout_s: float = 120.0
    daemon_start_timeout_s: float = 60.0
    node_log_level: str = "4"
    node_log_json: bool = False
    genesis_url: str = ""
    faucet_url: str = ""

    # Status API (0 = disabled)
    status_host: str = "127.0.0.1"
    status_port: int = 0

    @property
    def allowlist(self) -> frozenset[str]:
        return frozenset(self.miners)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name)
    if v is None:
        return bool(default)
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name, str(default)))
    except (TypeError, ValueError):
        return int(default)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(env.get(name, str(default)))
    except (TypeError, ValueError):
        return float(default)


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> DealMakerConfig:
    """Build a config from DEALMAKER_* variables. Miners are supplied on the command line."""
    env = os.environ if environ is None else environ

    idle = max(0.0, _env_float(env, "DEALMAKER_IDLE_INTERVAL_S", DEFAULT_IDLE_INTERVAL_S))
    duration = max(1, _env_int(env, "DEALMAKER_DEAL_DURATION", DEFAULT_DEAL_DURATION))
    poll = max(0.1, _env_float(env, "DEALMAKER_DEAL_POLL_S", 5.0))
    timeout = max(0.0, _env_float(env, "DEALMAKER_DEAL_TIMEOUT_S", 0.0))
    cmd_timeout = max(1.0, _env_float(env, "DEALMAKER_COMMAND_TIMEOUT_S", 120.0))
    start_timeout = max(1.0, _env_float(env, "DEALMAKER_DAEMON_START_TIMEOUT_S", 60.0))
    status_port = max(0, _env_int(env, "DEALMAKER_STATUS_PORT", 0))

    return DealMakerConfig(
        network=(env.get("DEALMAKER_NETWORK") or DEFAULT_NETWORK).strip(),
        workdir=(env.get("DEALMAKER_WORKDIR") or "").strip(),
        binpath=(env.get("DEALMAKER_BINPATH") or "").strip(),
        miners=(),
        idle_interval_s=float(idle),
        deal_duration=int(duration),
        deal_poll_s=float(poll),
        deal_timeout_s=float(timeout),
        command_timeout_s=float(cmd_timeout),
        daemon_start_timeout_s=float(start_timeout),
        node_log_level=(env.get("DEALMAKER_NODE_LOG_LEVEL") or "4").strip(),
        node_log_json=_env_bool(env, "DEALMAKER_NODE_LOG_JSON", False),
        genesis_url=(env.get("DEALMAKER_GENESIS_URL") or "").strip(),
        faucet_url=(env.get("DEALMAKER_FAUCET_URL") or "").strip(),
        status_host=(env.get("DEALMAKER_STATUS_HOST") or "127.0.0.1").strip(),
        status_port=int(status_port),
    )


def go_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    gp = (env.get("GOPATH") or "").strip()
    if gp:
        return Path(gp)
    return Path.home() / "go"


def default_binpath(environ: Optional[Mapping[str, str]] = None) -> str:
    """Binary built in the project checkout, falling back to a search of PATH.

    Returns "" when nothing is found.
    """
    built = go_path(environ) / "src" / "github.com" / "filecoin-project" / "go-filecoin" / BINARY_NAME
    if built.is_file():
        return str(built)
    found = shutil.which(BINARY_NAME)
    return found or ""


def resolve_binpath(explicit: str = "", environ: Optional[Mapping[str, str]] = None) -> str:
    binpath = (explicit or "").strip() or default_binpath(environ)
    if not binpath:
        raise StartupError(
            "binary_not_found",
            f"please install or build `{BINARY_NAME}`; no binary provided or found",
        )
    p = Path(binpath).expanduser()
    if not p.is_file():
        raise StartupError(
            "binary_not_found",
            f"failed when checking for `{BINARY_NAME}` binary; no such file: {p}",
        )
    return str(p)


def ensure_empty_workdir(path: str) -> Path:
    p = Path(path).expanduser()
    try:
        entries = os.scandir(p)
    except OSError as e:
        raise StartupError("workdir_unreadable", f"fail when checking workdir; {e}") from e
    with entries:
        for _ in entries:
            raise StartupError("workdir_not_empty", f"fail when checking workdir; workdir is not empty: {p}")
    return p
