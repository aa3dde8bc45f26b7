"""Subprocess boundary: optional system utilities and their output parsers.

Every external tool is optional. Callers path-probe with :func:`find_tool`,
run with :func:`run_probe` under a hard timeout, and treat any
:class:`ProbeError` as a signal to move on to the next acquisition tier.
"""

import logging
import re
import shutil
import subprocess
from collections.abc import Callable, Iterable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signature shared by run_probe and the fakes used in tests.
ProbeRunner = Callable[[Sequence[str], float], str]

_ARGUMENT_START = re.compile(r"\s+(?=[-/])")


class ProbeError(RuntimeError):
    """Raised when an external probe cannot produce output."""

    def __init__(self, tool: str, message: str):
        super().__init__(message)
        self.tool = tool

    def __str__(self):
        return f"[{self.tool}] {super().__str__()}"


class ProbeUnavailableError(ProbeError):
    """The probe utility is not installed or not executable."""


class ProbeTimeoutError(ProbeError):
    """The probe did not finish within its wall-clock budget and was killed."""


def find_tool(name: str) -> str | None:
    """Return the absolute path of an optional utility, or None."""
    return shutil.which(name)


def run_probe(argv: Sequence[str], timeout: float) -> str:
    """
    Run an external utility and return its stdout.

    The child is killed and reaped when ``timeout`` expires.

    Raises:
        ProbeUnavailableError: the executable does not exist.
        ProbeTimeoutError: the child outlived ``timeout``.
        ProbeError: the child exited with a non-zero status.
    """
    tool = argv[0]
    try:
        proc = subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            text=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise ProbeUnavailableError(tool, str(exc)) from exc

    try:
        stdout, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        proc.kill()
        proc.communicate()
        raise ProbeTimeoutError(tool, f"timed out after {timeout:.1f}s") from exc

    if proc.returncode != 0:
        raise ProbeError(tool, f"exited with status {proc.returncode}")
    return stdout


def clean_process_name(command: str) -> str:
    """
    Normalize a command line into a display name.

    Strips trailing arguments, the directory part of an absolute path and
    an ``.app`` bundle suffix:

        "/usr/bin/top -a -b"       -> "top"
        "/Applications/Xcode.app"  -> "Xcode"
    """
    name = command.strip()
    if name.startswith("/"):
        # Arguments begin at the first space followed by a flag or another path.
        name = _ARGUMENT_START.split(name, maxsplit=1)[0]
        name = name.rstrip("/").rsplit("/", 1)[-1]
    else:
        name = name.split(" -", 1)[0]
    name = name.strip()
    if name.endswith(".app"):
        name = name[: -len(".app")]
    return name or "Unknown"


def rank(
    items: Iterable[T],
    key: Callable[[T], float],
    limit: int,
    keep: Callable[[T], bool] | None = None,
) -> list[T]:
    """Filter, sort descending by ``key`` and truncate to ``limit`` entries."""
    selected = [item for item in items if keep is None or keep(item)]
    selected.sort(key=key, reverse=True)
    return selected[:limit]


def _parse_float(token: str) -> float | None:
    try:
        return float(token.rstrip("%").replace(",", "."))
    except ValueError:
        return None


def parse_top_output(output: str) -> list[tuple[int, float, str]]:
    """
    Parse ``top`` output into (pid, cpu_percent, command) rows.

    Works for macOS ``top -l N -stats pid,cpu,command`` and procps
    ``top -b -n N``. Only the last sample section is used, since the first
    sample of a multi-sample run has no usage delta behind it.
    """
    lines = output.splitlines()
    header_index = None
    for index, line in enumerate(lines):
        tokens = line.split()
        if "PID" in tokens and "COMMAND" in tokens and ("%CPU" in tokens or "CPU" in tokens):
            header_index = index
    if header_index is None:
        return []

    header = lines[header_index].split()
    pid_col = header.index("PID")
    cpu_col = header.index("%CPU") if "%CPU" in header else header.index("CPU")
    cmd_col = header.index("COMMAND")

    rows: list[tuple[int, float, str]] = []
    for line in lines[header_index + 1 :]:
        parts = line.split()
        if len(parts) <= cmd_col:
            continue
        try:
            pid = int(parts[pid_col])
        except ValueError:
            continue
        cpu = _parse_float(parts[cpu_col])
        if cpu is None:
            continue
        rows.append((pid, cpu, " ".join(parts[cmd_col:])))
    return rows


def parse_ps_cpu_output(output: str) -> list[tuple[int, float, str]]:
    """Parse ``ps -Ao pid,%cpu,command`` into (pid, cpu_percent, command) rows."""
    rows: list[tuple[int, float, str]] = []
    for line in output.splitlines()[1:]:
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        cpu = _parse_float(parts[1])
        if cpu is None:
            continue
        rows.append((pid, cpu, parts[2].strip()))
    return rows


def parse_ps_memory_output(output: str) -> list[tuple[int, int, str]]:
    """Parse ``ps -Ao pid,rss,comm`` into (pid, rss_bytes, command) rows."""
    rows: list[tuple[int, int, str]] = []
    for line in output.splitlines()[1:]:
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            rss_kb = int(parts[1])
        except ValueError:
            continue
        rows.append((pid, rss_kb * 1024, parts[2].strip()))
    return rows
