"""Running-application enumeration."""

import functools
import logging
import plistlib
import re
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import psutil

from pysage.collector import Collector, first_result
from pysage.config import COLLECTION, CollectorConfig
from pysage.models import RunningApplication
from pysage.probes import ProbeRunner, ProbeUnavailableError, clean_process_name, find_tool, run_probe

logger = logging.getLogger(__name__)

APP_BUNDLE_MARKER = ".app/Contents/MacOS/"

_LSAPPINFO_PID = re.compile(r'"pid"\s*=\s*(\d+)')


def bundle_path(exe: str) -> str | None:
    """
    Return the ``.app`` bundle directory an executable lives in.

    Helper bundles nested inside another bundle are not applications:

        "/Applications/Xcode.app/Contents/MacOS/Xcode" -> "/Applications/Xcode.app"
        ".../Chrome.app/Contents/Frameworks/Helper.app/Contents/MacOS/Helper" -> None
    """
    index = exe.find(APP_BUNDLE_MARKER)
    if index < 0:
        return None
    bundle = exe[: index + len(".app")]
    if "/Contents/" in bundle:
        return None
    return bundle


@functools.lru_cache(maxsize=256)
def read_bundle_id(bundle: str) -> str:
    try:
        with open(Path(bundle) / "Contents" / "Info.plist", "rb") as fh:
            info = plistlib.load(fh)
    except (OSError, ValueError, plistlib.InvalidFileException):
        return ""
    return str(info.get("CFBundleIdentifier", ""))


def _current_username() -> str | None:
    try:
        return psutil.Process().username()
    except (psutil.Error, OSError):
        return None


class ApplicationCollector(Collector[tuple[RunningApplication, ...]]):
    """
    Enumerates user-facing applications.

    On macOS an application is a process whose executable lives in a
    top-level ``.app`` bundle. Elsewhere it is any process of the current
    user with an executable on disk. Entries are deduplicated by name; the
    foreground process wins a duplicate.
    """

    name = "applications"

    def __init__(
        self,
        config: CollectorConfig = COLLECTION,
        runner: ProbeRunner = run_probe,
        tool_finder: Callable[[str], str | None] = find_tool,
        process_iter: Callable[..., Iterable[Any]] = psutil.process_iter,
        bundle_id_reader: Callable[[str], str] = read_bundle_id,
        username: str | None = None,
        platform: str = sys.platform,
    ) -> None:
        self._config = config
        self._runner = runner
        self._find_tool = tool_finder
        self._process_iter = process_iter
        self._bundle_id_reader = bundle_id_reader
        self._username = username
        self._platform = platform

    def acquire(self) -> tuple[RunningApplication, ...]:
        if self._username is None and self._platform != "darwin":
            self._username = _current_username()
        active_pid = self.foreground_pid()

        apps: dict[str, RunningApplication] = {}
        for proc in self._process_iter(attrs=["pid", "name", "exe", "username"]):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            app = self._application(info, active_pid)
            if app is None:
                continue
            existing = apps.get(app.name)
            if existing is None or (app.is_active and not existing.is_active):
                apps[app.name] = app
        return tuple(apps.values())

    def fallback(self) -> tuple[RunningApplication, ...]:
        return ()

    def foreground_pid(self) -> int | None:
        """Pid of the focused application, when a probe can tell."""
        result = first_result(
            [
                ("lsappinfo", self._front_from_lsappinfo),
                ("xdotool", self._front_from_xdotool),
            ]
        )
        return result[1] if result else None

    def _application(self, info: dict[str, Any], active_pid: int | None) -> RunningApplication | None:
        pid = info.get("pid") or 0
        exe = info.get("exe") or ""
        if not exe:
            return None

        if self._platform == "darwin":
            bundle = bundle_path(exe)
            if bundle is None:
                return None
            name = clean_process_name(bundle)
            bundle_id = self._bundle_id_reader(bundle)
        else:
            if self._username is not None and info.get("username") != self._username:
                return None
            name = clean_process_name(info.get("name") or exe)
            bundle_id = exe

        return RunningApplication(
            name=name,
            bundle_id=bundle_id,
            pid=pid,
            is_active=pid == active_pid,
            is_hidden=False,
        )

    def _probe(self, argv: list[str]) -> str:
        if self._find_tool(argv[0]) is None:
            raise ProbeUnavailableError(argv[0], "not found on PATH")
        return self._runner(argv, self._config.probe_timeout)

    def _front_from_lsappinfo(self) -> int | None:
        if self._platform != "darwin":
            return None
        asn = self._probe(["lsappinfo", "front"]).strip()
        if not asn:
            return None
        match = _LSAPPINFO_PID.search(self._probe(["lsappinfo", "info", "-only", "pid", asn]))
        return int(match.group(1)) if match else None

    def _front_from_xdotool(self) -> int | None:
        if self._platform == "darwin":
            return None
        output = self._probe(["xdotool", "getactivewindow", "getwindowpid"]).strip()
        return int(output) if output.isdigit() else None
