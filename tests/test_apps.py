"""Tests for running-application enumeration."""

import psutil

from pysage.apps import ApplicationCollector, bundle_path


class FakeProcess:
    """Stands in for a psutil.Process returned by process_iter(attrs=...)."""

    def __init__(self, pid, name, exe, username="alice", error=None):
        self._info = {"pid": pid, "name": name, "exe": exe, "username": username}
        self._error = error

    @property
    def info(self):
        if self._error is not None:
            raise self._error
        return self._info


def make_collector(processes, runner=None, tool_finder=None, **kwargs) -> ApplicationCollector:
    defaults = dict(
        runner=runner or (lambda argv, timeout: ""),
        tool_finder=tool_finder or (lambda name: None),
        process_iter=lambda attrs: list(processes),
        bundle_id_reader=lambda bundle: "com.example." + bundle.rsplit("/", 1)[-1].removesuffix(".app"),
        username="alice",
        platform="linux",
    )
    defaults.update(kwargs)
    return ApplicationCollector(**defaults)


class TestBundlePath:
    """Tests for bundle_path."""

    def test_top_level_bundle(self):
        """Test an executable inside a top-level bundle."""
        assert bundle_path("/Applications/Xcode.app/Contents/MacOS/Xcode") == "/Applications/Xcode.app"

    def test_nested_helper_bundle(self):
        """Test helper bundles nested in another bundle are not applications."""
        exe = (
            "/Applications/Google Chrome.app/Contents/Frameworks/"
            "Google Chrome Helper.app/Contents/MacOS/Google Chrome Helper"
        )
        assert bundle_path(exe) is None

    def test_plain_binary(self):
        """Test executables outside bundles."""
        assert bundle_path("/usr/bin/python3") is None


class TestLinuxApplications:
    """Tests for enumeration on Linux."""

    def test_filters_to_user_processes_with_executables(self):
        """Test other users' processes and kernel threads are skipped."""
        processes = [
            FakeProcess(10, "firefox", "/usr/lib/firefox/firefox"),
            FakeProcess(11, "sshd", "/usr/sbin/sshd", username="root"),
            FakeProcess(12, "kworker/0:1", None),
        ]
        apps = make_collector(processes).collect()
        assert [(app.name, app.pid, app.bundle_id) for app in apps] == [
            ("firefox", 10, "/usr/lib/firefox/firefox")
        ]
        assert not apps[0].is_hidden

    def test_dedupes_by_name_preferring_foreground(self):
        """Test duplicate names collapse onto the focused process."""
        processes = [
            FakeProcess(20, "code", "/usr/share/code/code"),
            FakeProcess(21, "code", "/usr/share/code/code"),
        ]
        collector = make_collector(
            processes,
            tool_finder=lambda name: "/usr/bin/xdotool" if name == "xdotool" else None,
            runner=lambda argv, timeout: "21\n",
        )
        apps = collector.collect()
        assert len(apps) == 1
        assert apps[0].pid == 21
        assert apps[0].is_active

    def test_vanished_processes_are_skipped(self):
        """Test processes that exit during enumeration are ignored."""
        processes = [
            FakeProcess(30, "gone", "/usr/bin/gone", error=psutil.NoSuchProcess(30)),
            FakeProcess(31, "vim", "/usr/bin/vim"),
        ]
        assert [app.name for app in make_collector(processes).collect()] == ["vim"]

    def test_no_foreground_probe(self):
        """Test nothing is active when no probe can tell."""
        apps = make_collector([FakeProcess(40, "vim", "/usr/bin/vim")]).collect()
        assert not apps[0].is_active


class TestDarwinApplications:
    """Tests for enumeration on macOS."""

    def test_bundles_and_foreground(self):
        """Test bundled apps are listed and lsappinfo marks the front one."""

        def runner(argv, timeout):
            if argv == ["lsappinfo", "front"]:
                return "ASN:0x0-0x1c01c:\n"
            return '"pid"=512\n'

        processes = [
            FakeProcess(512, "Safari", "/Applications/Safari.app/Contents/MacOS/Safari"),
            FakeProcess(600, "Mail", "/System/Applications/Mail.app/Contents/MacOS/Mail"),
            FakeProcess(601, "launchd", "/sbin/launchd", username="root"),
            FakeProcess(
                602,
                "Safari Helper",
                "/Applications/Safari.app/Contents/XPCServices/Helper.app/Contents/MacOS/Helper",
            ),
        ]
        collector = make_collector(
            processes,
            runner=runner,
            tool_finder=lambda name: f"/usr/bin/{name}",
            platform="darwin",
        )
        apps = {app.name: app for app in collector.collect()}
        assert set(apps) == {"Safari", "Mail"}
        assert apps["Safari"].is_active
        assert apps["Safari"].bundle_id == "com.example.Safari"
        assert not apps["Mail"].is_active


class TestFallback:
    """Tests for failure handling."""

    def test_enumeration_failure_yields_empty(self):
        """Test a failing enumeration publishes no applications."""

        def broken(attrs):
            raise psutil.AccessDenied()

        assert make_collector([], process_iter=broken).collect() == ()
