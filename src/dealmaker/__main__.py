# src/dealmaker/__main__.py
from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import threading
import traceback
from typing import Any, Dict, List, Mapping, Optional

from dealmaker.config import DealMakerConfig, config_from_env, ensure_empty_workdir, resolve_binpath
from dealmaker.env import load_dotenv_if_present
from dealmaker.errors import Cancelled, StartupError
from dealmaker.structured_logging import configure_structured_logging, log_event


log = logging.getLogger("dealmaker")


def _parse_args(argv: List[str], defaults: DealMakerConfig) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="dealmaker",
        description="Continuously make storage deals with the given miners on a go-filecoin devnet",
    )
    ap.add_argument("--network", default=defaults.network, help="set the network name to run against")
    ap.add_argument("--workdir", default=defaults.workdir, help="set the working directory used to store filecoin repos")
    ap.add_argument("--binpath", default=defaults.binpath, help="set the binary used when executing `go-filecoin` commands")
    ap.add_argument("--idle-interval", dest="idle_interval_s", type=float, default=defaults.idle_interval_s)
    ap.add_argument("--deal-duration", dest="deal_duration", type=int, default=defaults.deal_duration)
    ap.add_argument("--deal-poll", dest="deal_poll_s", type=float, default=defaults.deal_poll_s)
    ap.add_argument("--deal-timeout", dest="deal_timeout_s", type=float, default=defaults.deal_timeout_s)
    ap.add_argument("--status-host", dest="status_host", default=defaults.status_host)
    ap.add_argument("--status-port", dest="status_port", type=int, default=defaults.status_port)
    ap.add_argument("--once", action="store_true", help="run a single round and exit")
    ap.add_argument("miners", nargs="+", help="miner addresses to make deals with")
    return ap.parse_args(argv)


def build_config(argv: List[str], environ: Optional[Mapping[str, str]] = None) -> DealMakerConfig:
    defaults = config_from_env(environ)
    args = _parse_args(argv, defaults)

    miners: List[str] = []
    for m in args.miners:
        s = str(m).strip()
        if s and s not in miners:
            miners.append(s)

    return dataclasses.replace(
        defaults,
        network=str(args.network).strip(),
        workdir=str(args.workdir or "").strip(),
        binpath=str(args.binpath or "").strip(),
        miners=tuple(miners),
        idle_interval_s=max(0.0, float(args.idle_interval_s)),
        deal_duration=max(1, int(args.deal_duration)),
        deal_poll_s=max(0.1, float(args.deal_poll_s)),
        deal_timeout_s=max(0.0, float(args.deal_timeout_s)),
        status_host=str(args.status_host),
        status_port=max(0, int(args.status_port)),
        once=bool(args.once),
    )


def handle_error(err: BaseException, msg: str = "") -> int:
    if msg:
        print(msg, err, file=sys.stderr)
    else:
        print(err, file=sys.stderr)
    return 1


class ShutdownListener:
    """Turn SIGINT/SIGTERM into a set cancellation event."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, cancel: threading.Event) -> None:
        self.cancel = cancel
        self._previous: Dict[int, Any] = {}

    def _handle(self, signum: int, frame: Any) -> None:
        if not self.cancel.is_set():
            print("ctrl-c received, starting shutdown", file=sys.stderr)
            log_event(log, "shutdown_requested", signal=int(signum))
        self.cancel.set()

    def install(self) -> "ShutdownListener":
        for sig in self.SIGNALS:
            self._previous[sig] = signal.signal(sig, self._handle)
        return self

    def restore(self) -> None:
        for sig, prev in self._previous.items():
            signal.signal(sig, prev)
        self._previous.clear()


def run(cfg: DealMakerConfig, *, cancel: threading.Event) -> int:
    """Bootstrap the devnet client node and run the deal loop until cancelled."""
    from dealmaker.market.deal_loop import DealLoop
    from dealmaker.market.deals import DealExecutor
    from dealmaker.node.environment import Devnet, make_temp_workdir

    try:
        binpath = resolve_binpath(cfg.binpath)
    except StartupError as e:
        return handle_error(e)

    owns_workdir = False
    workdir = cfg.workdir
    if not workdir:
        try:
            workdir = make_temp_workdir()
        except OSError as e:
            return handle_error(e, "failed to create workdir;")
        owns_workdir = True

    try:
        ensure_empty_workdir(workdir)
    except StartupError as e:
        return handle_error(e)

    cfg = dataclasses.replace(cfg, binpath=binpath, workdir=workdir)

    with Devnet(
        network=cfg.network,
        workdir=workdir,
        binpath=binpath,
        owns_workdir=owns_workdir,
        genesis_url=cfg.genesis_url,
        faucet_url=cfg.faucet_url,
        command_timeout_s=cfg.command_timeout_s,
        daemon_start_timeout_s=cfg.daemon_start_timeout_s,
        node_log_level=cfg.node_log_level,
        node_log_json=cfg.node_log_json,
        cancel=cancel,
    ) as env:
        node = env.new_process("client")

        try:
            env.init_and_start(node)
        except Cancelled:
            return 0
        except Exception as e:
            return handle_error(e, "failed to init and start node;")

        try:
            env.get_funds(node)
        except Cancelled:
            return 0
        except Exception as e:
            return handle_error(e, "failed to get funds;")

        executor = DealExecutor(
            node,
            duration=cfg.deal_duration,
            poll_s=cfg.deal_poll_s,
            timeout_s=cfg.deal_timeout_s,
            cancel=cancel,
        )
        try:
            piece_size = executor.max_piece_size()
        except Cancelled:
            return 0
        except Exception as e:
            return handle_error(e, "failed to fetch protocol parameters;")

        log_event(
            log,
            "deal_maker_ready",
            network=cfg.network,
            workdir=workdir,
            binpath=binpath,
            miners=list(cfg.miners),
            max_piece_size=piece_size,
        )

        loop = DealLoop(cfg, node, executor, cancel=cancel)

        server = None
        if cfg.status_port > 0:
            from dealmaker.api.app import StatusServer, create_app

            server = StatusServer(create_app(loop), host=cfg.status_host, port=cfg.status_port)
            server.start()
        try:
            loop.run()
        finally:
            if server is not None:
                server.stop()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env early so DEALMAKER_* vars exist before anything reads them.
    load_dotenv_if_present()
    configure_structured_logging()

    cfg = build_config(sys.argv[1:] if argv is None else argv)

    cancel = threading.Event()
    listener = ShutdownListener(cancel).install()
    try:
        return run(cfg, cancel=cancel)
    except Exception as e:
        print("recovered from unexpected error", repr(e), file=sys.stderr)
        print("stacktrace:\n" + traceback.format_exc(), file=sys.stderr)
        return 1
    finally:
        listener.restore()


if __name__ == "__main__":
    raise SystemExit(main())
