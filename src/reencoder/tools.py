"""Wrappers around the external ``flac`` and ``metaflac`` executables."""

from __future__ import annotations

import logging
import re
import shutil
import signal
import subprocess
from collections.abc import Sequence

logger = logging.getLogger(__name__)

FLAC_EXECUTABLE = "flac"
METAFLAC_EXECUTABLE = "metaflac"
REQUIRED_TOOLS = (FLAC_EXECUTABLE, METAFLAC_EXECUTABLE)

DEFAULT_FLAC_ARGS: tuple[str, ...] = ("-8f", "-j4")

_VENDOR_PATTERN = re.compile(r"libFLAC (\d+\.\d+\.\d+)")
_VERSION_PATTERN = re.compile(r"flac (\S+)")
_INTERRUPT_SIGNALS = {signal.SIGINT, signal.SIGTERM}


class ToolError(RuntimeError):
    """Base error for failures of the external FLAC tools."""


class ToolNotFoundError(ToolError):
    """Raised when a required executable is not on PATH."""


class ProbeError(ToolError):
    """Raised when metaflac cannot read a file's vendor tag."""


class EncodeError(ToolError):
    """Raised when flac fails to re-encode a file."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{message} (file: {path})")
        self.path = path


class EncodeInterruptedError(EncodeError):
    """Raised when the flac process was stopped by an interrupt signal."""


def check_tools(tools: Sequence[str] = REQUIRED_TOOLS) -> None:
    """Ensure every required executable can be found."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ToolNotFoundError(f"Missing executable(s): {', '.join(missing)}")


def get_encoder_version() -> str:
    """Return the version of the installed flac encoder, e.g. ``1.4.3``."""
    try:
        completed = subprocess.run(
            [FLAC_EXECUTABLE, "-v"],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"Missing executable: {FLAC_EXECUTABLE}") from exc
    except subprocess.CalledProcessError as exc:
        raise ToolError(f"flac -v exited with code {exc.returncode}") from exc

    match = _VERSION_PATTERN.search(completed.stdout)
    if match is None:
        raise ToolError(f"Unrecognised flac version output: {completed.stdout!r}")
    return match.group(1).strip()


def parse_vendor_tag(output: str) -> str:
    """Extract the libFLAC version from ``metaflac --show-vendor-tag`` output."""
    match = _VENDOR_PATTERN.search(output)
    return match.group(1) if match else ""


def probe_encoder_version(path: str) -> str:
    """Return the encoder version embedded in ``path`` or ``""`` if unknown."""
    try:
        completed = subprocess.run(
            [METAFLAC_EXECUTABLE, "--show-vendor-tag", path],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"Missing executable: {METAFLAC_EXECUTABLE}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise ProbeError(f"metaflac failed on {path}: {stderr}") from exc

    encoder = parse_vendor_tag(completed.stdout)
    logger.debug("Vendor tag for %s: %r", path, encoder)
    return encoder


def build_encode_command(path: str, flac_args: Sequence[str] | None = None) -> list[str]:
    args = list(flac_args) if flac_args else list(DEFAULT_FLAC_ARGS)
    return [FLAC_EXECUTABLE, *args, path]


def reencode_file(path: str, flac_args: Sequence[str] | None = None) -> None:
    """Re-encode ``path`` in place with flac.

    The child runs in its own session so a terminal interrupt aimed at this
    process never reaches an encode that is already running.
    """
    cmd = build_encode_command(path, flac_args)
    logger.debug("Running %s", " ".join(cmd))
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        raise EncodeError(path, f"unable to start flac: {exc}") from exc

    if completed.returncode == 0:
        return

    if completed.returncode < 0 and -completed.returncode in _INTERRUPT_SIGNALS:
        raise EncodeInterruptedError(
            path, f"flac interrupted by signal {-completed.returncode}"
        )

    stderr = (completed.stderr or "").strip().splitlines()
    detail = stderr[-1] if stderr else "no output"
    raise EncodeError(path, f"flac exited with code {completed.returncode}: {detail}")
