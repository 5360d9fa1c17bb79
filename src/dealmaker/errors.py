from __future__ import annotations

from typing import Any, Optional


class DealMakerError(RuntimeError):
    """Base error. `code` is a short stable token suitable for logs/metrics."""

    def __init__(self, code: str, msg: str) -> None:
        super().__init__(msg)
        self.code = code


class StartupError(DealMakerError):
    """Fatal: raised while bootstrapping; the process exits non-zero."""


class SourceUnavailable(DealMakerError):
    """The ask stream could not be opened at all. The round is abandoned."""


class AskDecodeError(DealMakerError):
    """A single ask element could not be decoded. The element is skipped."""

    def __init__(self, code: str, msg: str, *, raw: Optional[str] = None) -> None:
        super().__init__(code, msg)
        self.raw = raw


class NodeCommandError(DealMakerError):
    def __init__(
        self,
        code: str,
        msg: str,
        *,
        command: Optional[list[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(code, msg)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr


class DealFailed(DealMakerError):
    def __init__(self, code: str, msg: str, *, details: Any | None = None) -> None:
        super().__init__(code, msg)
        self.details = details


class Cancelled(DealMakerError):
    """Cancellation was observed at a suspension point."""

    def __init__(self, where: str = "") -> None:
        super().__init__("cancelled", f"cancelled{':' + where if where else ''}")
        self.where = where
