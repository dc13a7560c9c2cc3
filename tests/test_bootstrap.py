"""Tests for mdviewer.bootstrap module."""

import io
import os
import subprocess
import urllib.error

import pytest

from mdviewer import bootstrap as bootstrap_module
from mdviewer.bootstrap import (
    INSTALLER_MAX_AGE_SECONDS,
    PKEXEC_DISMISSED,
    BootstrapStatus,
    InstallAttempt,
    RuntimeBootstrapper,
    RuntimeProfile,
    _PkexecProcess,
    _PopenProcess,
    installer_name_for_url,
    query_webengine_version,
    runtime_profile_from_config,
    split_installer_args,
)
from mdviewer.config import ViewerConfig
from mdviewer.errors import ElevationCancelledError, InstallerDownloadError, RuntimeUnavailableError

NOW = 1_700_000_000.0
PROFILE = RuntimeProfile(
    name="Test runtime",
    installer_url="https://example.invalid/setup.exe",
    installer_name="setup.exe",
    silent_args=("/silent",),
    interactive_args=(),
)


class ProbeSequence:
    """Probe returning queued versions; repeats the last one."""

    def __init__(self, *versions):
        self.versions = list(versions)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if len(self.versions) > 1:
            return self.versions.pop(0)
        return self.versions[0]


class FakeProcess:
    def __init__(self, exit_code=0, cancel_on_wait=False):
        self.exit_code = exit_code
        self.cancel_on_wait = cancel_on_wait
        self.timeouts = []

    def wait(self, timeout_s):
        self.timeouts.append(timeout_s)
        if self.cancel_on_wait:
            raise ElevationCancelledError("dismissed")
        return self.exit_code


class FakeLauncher:
    def __init__(self, silent=None, elevated=None, cancel_elevation=False, start_error=None):
        self.silent = silent or FakeProcess(0)
        self.elevated = elevated or FakeProcess(0)
        self.cancel_elevation = cancel_elevation
        self.start_error = start_error
        self.calls = []

    def start(self, path, args, *, elevated):
        self.calls.append((path, args, elevated))
        if self.start_error is not None:
            raise self.start_error
        if elevated and self.cancel_elevation:
            raise ElevationCancelledError("UAC prompt declined")
        return self.elevated if elevated else self.silent


class FakeDownload(io.BytesIO):
    def __init__(self, payload=b"MZ installer", status=200):
        super().__init__(payload)
        self.status = status


class RecordingOpener:
    def __init__(self, response=None, error=None):
        self.response = response if response is not None else FakeDownload()
        self.error = error
        self.calls = []

    def __call__(self, req, timeout=None):
        self.calls.append((req.full_url, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def make_bootstrapper(tmp_path, probe, launcher=None, opener=None, profile=PROFILE, statuses=None):
    return RuntimeBootstrapper(
        profile,
        probe=probe,
        launcher=launcher or FakeLauncher(),
        opener=opener or RecordingOpener(),
        temp_dir=tmp_path,
        clock=lambda: NOW,
        on_status=statuses.append if statuses is not None else None,
    )


def write_cached_installer(tmp_path, age_seconds, payload=b"cached"):
    path = tmp_path / PROFILE.installer_name
    path.write_bytes(payload)
    mtime = NOW - age_seconds
    os.utime(path, (mtime, mtime))
    return path


class TestIsRuntimeInstalled:
    """Tests for RuntimeBootstrapper.is_runtime_installed."""

    def test_version_means_installed(self, tmp_path):
        """Test a non-empty version string means installed."""
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence("6.7.2"))
        assert bootstrapper.is_runtime_installed() is True
        assert bootstrapper.state.runtime_version == "6.7.2"

    def test_empty_version_means_missing(self, tmp_path):
        """Test an empty or missing version means not installed."""
        assert make_bootstrapper(tmp_path, ProbeSequence("")).is_runtime_installed() is False
        assert make_bootstrapper(tmp_path, ProbeSequence(None)).is_runtime_installed() is False

    def test_probe_errors_mean_missing(self, tmp_path):
        """Test a failing probe is reported as not installed."""

        def probe():
            raise subprocess.TimeoutExpired(["python"], 30)

        bootstrapper = make_bootstrapper(tmp_path, probe)
        assert bootstrapper.is_runtime_installed() is False
        assert bootstrapper.state.runtime_detected is False


class TestEnsureRuntime:
    """Tests for RuntimeBootstrapper.ensure_runtime."""

    def test_installed_returns_immediately(self, tmp_path):
        """Test nothing is downloaded or launched when the runtime exists."""
        launcher = FakeLauncher()
        opener = RecordingOpener()
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence("6.7.2"), launcher, opener)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.READY

        assert launcher.calls == []
        assert opener.calls == []
        assert list(tmp_path.iterdir()) == []

    def test_fresh_cached_installer_is_reused(self, tmp_path):
        """Test an installer younger than a day is not downloaded again."""
        cached = write_cached_installer(tmp_path, age_seconds=3600)
        launcher = FakeLauncher()
        opener = RecordingOpener()
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None, "6.7.2"), launcher, opener)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.INSTALLED

        assert opener.calls == []
        assert cached.read_bytes() == b"cached"
        assert launcher.calls == [(cached, ("/silent",), False)]
        assert bootstrapper.state.installer_path == cached

    def test_stale_cached_installer_is_downloaded(self, tmp_path):
        """Test an installer older than a day is replaced."""
        cached = write_cached_installer(tmp_path, age_seconds=INSTALLER_MAX_AGE_SECONDS + 60)
        opener = RecordingOpener(FakeDownload(b"fresh payload"))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None, "6.7.2"), opener=opener)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.INSTALLED

        assert opener.calls == [(PROFILE.installer_url, 30.0)]
        assert cached.read_bytes() == b"fresh payload"
        assert not (tmp_path / "setup.exe.part").exists()

    def test_missing_installer_is_downloaded(self, tmp_path):
        """Test an absent installer is fetched."""
        opener = RecordingOpener(FakeDownload(b"payload"))
        statuses = []
        bootstrapper = make_bootstrapper(
            tmp_path, ProbeSequence(None, "6.7.2"), opener=opener, statuses=statuses
        )

        assert bootstrapper.ensure_runtime() is BootstrapStatus.INSTALLED

        assert len(opener.calls) == 1
        assert (tmp_path / "setup.exe").read_bytes() == b"payload"
        assert statuses[0] == "Installing Test runtime..."
        assert statuses[-1] == "Test runtime installed."

    def test_silent_failure_retries_elevated(self, tmp_path):
        """Test a nonzero silent exit leads to an elevated attempt."""
        launcher = FakeLauncher(silent=FakeProcess(1603), elevated=FakeProcess(0))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None, "6.7.2"), launcher)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.INSTALLED

        assert [elevated for _path, _args, elevated in launcher.calls] == [False, True]
        assert launcher.calls[1][1] == ()

    def test_silent_timeout_retries_elevated(self, tmp_path):
        """Test a silent install that never finishes counts as failed."""
        launcher = FakeLauncher(silent=FakeProcess(None))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None, "6.7.2"), launcher)

        bootstrapper.ensure_runtime()

        assert launcher.silent.timeouts == [120.0]
        assert [elevated for _path, _args, elevated in launcher.calls] == [False, True]

    def test_elevated_attempt_precedes_fatal_error(self, tmp_path):
        """Test both attempts run before reporting the runtime missing."""
        launcher = FakeLauncher(silent=FakeProcess(1), elevated=FakeProcess(1))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), launcher)

        with pytest.raises(RuntimeUnavailableError, match="not installed correctly"):
            bootstrapper.ensure_runtime()

        assert [elevated for _path, _args, elevated in launcher.calls] == [False, True]

    def test_successful_install_without_runtime_is_fatal(self, tmp_path):
        """Test the runtime is re-queried after a clean installer exit."""
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None))

        with pytest.raises(RuntimeUnavailableError):
            bootstrapper.ensure_runtime()

    def test_declined_elevation_is_cancelled(self, tmp_path):
        """Test a declined elevation prompt is a non-fatal outcome."""
        launcher = FakeLauncher(silent=FakeProcess(1), cancel_elevation=True)
        statuses = []
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), launcher, statuses=statuses)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.CANCELLED
        assert statuses[-1] == "Test runtime installation was cancelled by the user."

    def test_dismissed_pkexec_is_cancelled(self, tmp_path):
        """Test cancellation detected while waiting is handled the same way."""
        launcher = FakeLauncher(silent=FakeProcess(1), elevated=FakeProcess(cancel_on_wait=True))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), launcher)

        assert bootstrapper.ensure_runtime() is BootstrapStatus.CANCELLED

    def test_launch_errors_are_failed_attempts(self, tmp_path):
        """Test an installer that cannot be started falls through to fatal."""
        launcher = FakeLauncher(start_error=PermissionError("not executable"))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), launcher)

        with pytest.raises(RuntimeUnavailableError):
            bootstrapper.ensure_runtime()
        assert len(launcher.calls) == 2

    def test_download_http_error_is_fatal(self, tmp_path):
        """Test a non-2xx download aborts before any install attempt."""
        launcher = FakeLauncher()
        opener = RecordingOpener(FakeDownload(b"not found", status=404))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), launcher, opener)

        with pytest.raises(InstallerDownloadError, match="HTTP 404"):
            bootstrapper.ensure_runtime()

        assert launcher.calls == []
        assert list(tmp_path.iterdir()) == []

    def test_download_transport_error_is_fatal(self, tmp_path):
        """Test transport failures are wrapped as download errors."""
        opener = RecordingOpener(error=urllib.error.URLError("no route to host"))
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), opener=opener)

        with pytest.raises(InstallerDownloadError, match="no route to host"):
            bootstrapper.ensure_runtime()
        assert opener.calls and len(opener.calls) == 1

    def test_no_profile_is_fatal(self, tmp_path):
        """Test a missing runtime without an installer cannot be fixed."""
        bootstrapper = make_bootstrapper(tmp_path, ProbeSequence(None), profile=None)

        with pytest.raises(RuntimeUnavailableError, match="no runtime installer is configured"):
            bootstrapper.ensure_runtime()


class TestRunInstaller:
    """Tests for RuntimeBootstrapper.run_installer."""

    def test_exit_code_mapping(self, tmp_path):
        """Test zero succeeds and nonzero fails."""
        path = tmp_path / "setup.exe"
        ok = make_bootstrapper(tmp_path, ProbeSequence(None), FakeLauncher(silent=FakeProcess(0)))
        bad = make_bootstrapper(tmp_path, ProbeSequence(None), FakeLauncher(silent=FakeProcess(2)))

        assert ok.run_installer(path, elevated=False) is InstallAttempt.SUCCEEDED
        assert bad.run_installer(path, elevated=False) is InstallAttempt.FAILED


class TestProcessWrappers:
    """Tests for the subprocess wait wrappers."""

    class FakePopen:
        def __init__(self, returncode=None):
            self.returncode = returncode
            self.killed = False

        def wait(self, timeout=None):
            if self.returncode is None:
                raise subprocess.TimeoutExpired(["setup"], timeout)
            return self.returncode

        def kill(self):
            self.killed = True

    def test_timeout_leaves_process_running(self):
        """Test a timed-out wait returns None without killing."""
        proc = self.FakePopen()
        assert _PopenProcess(proc).wait(0.1) is None
        assert proc.killed is False

    def test_exit_code_is_returned(self):
        """Test a finished process reports its exit code."""
        assert _PopenProcess(self.FakePopen(3)).wait(1) == 3

    def test_pkexec_dismissal_raises(self):
        """Test pkexec's dismissal status becomes a cancellation."""
        with pytest.raises(ElevationCancelledError):
            _PkexecProcess(self.FakePopen(PKEXEC_DISMISSED)).wait(1)

    def test_pkexec_other_codes_pass_through(self):
        """Test other pkexec exit codes are plain results."""
        assert _PkexecProcess(self.FakePopen(0)).wait(1) == 0


class TestHelpers:
    """Tests for module-level helpers."""

    def test_installer_name_from_url(self):
        """Test the cache name follows the URL's file name."""
        assert installer_name_for_url("https://aka.ms/vs/17/release/vc_redist.x64.exe") == "vc_redist.x64.exe"

    def test_installer_name_without_file_name(self):
        """Test URLs without a file name get a fixed name."""
        name = installer_name_for_url("https://go.example.com/fwlink/p/?LinkId=1")
        assert name.startswith("mdviewer-runtime-setup")

    def test_profile_from_config(self):
        """Test the profile is derived from config values."""
        config = ViewerConfig(
            installer_url="https://example.com/runtime/setup.exe",
            installer_silent_args="--quiet --accept-license",
        )
        profile = runtime_profile_from_config(config)
        assert profile.installer_name == "setup.exe"
        assert profile.silent_args == ("--quiet", "--accept-license")

    def test_no_profile_without_url(self):
        """Test an empty installer URL disables installation."""
        assert runtime_profile_from_config(ViewerConfig(installer_url="")) is None

    def test_profile_interactive_args_from_config(self):
        """Test the elevated pass uses the configured arguments."""
        config = ViewerConfig(
            installer_url="https://example.com/runtime/setup.exe",
            installer_interactive_args="",
        )
        assert runtime_profile_from_config(config).interactive_args == ()

        config = ViewerConfig(
            installer_url="https://example.com/runtime/setup.exe",
            installer_interactive_args="--wizard",
        )
        assert runtime_profile_from_config(config).interactive_args == ("--wizard",)

    def test_default_interactive_args(self):
        """Test the default elevated pass only asks for an install."""
        config = ViewerConfig(installer_url="https://example.com/vc_redist.x64.exe")
        assert runtime_profile_from_config(config).interactive_args == ("/install",)

    def test_split_args_keeps_windows_paths(self):
        """Test backslashes survive when splitting for Windows."""
        args = split_installer_args(r"/quiet /log C:\tmp\x.log", posix=False)
        assert args == ("/quiet", "/log", r"C:\tmp\x.log")

    def test_split_args_follows_os_name(self, monkeypatch):
        """Test the splitting mode is picked from the running platform."""
        config = ViewerConfig(
            installer_url="https://example.com/runtime/setup.exe",
            installer_silent_args=r"/install /log C:\tmp\x.log",
        )
        monkeypatch.setattr(bootstrap_module.os, "name", "nt")
        profile = runtime_profile_from_config(config)
        assert profile.silent_args == ("/install", "/log", r"C:\tmp\x.log")

    def test_split_args_posix(self):
        """Test quoting rules apply on POSIX systems."""
        assert split_installer_args("--dir '/opt/my runtime'", posix=True) == ("--dir", "/opt/my runtime")

    def test_query_webengine_version(self, monkeypatch):
        """Test the child interpreter's output is the version."""
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["cmd"] = cmd
            seen["timeout"] = kwargs.get("timeout")
            return subprocess.CompletedProcess(cmd, 0, stdout="6.7.2\n", stderr="")

        monkeypatch.setattr(bootstrap_module.subprocess, "run", fake_run)

        assert query_webengine_version(5.0) == "6.7.2"
        assert "PySide6.QtWebEngineCore" in seen["cmd"][-1]
        assert seen["timeout"] == 5.0

    def test_query_webengine_version_failure(self, monkeypatch):
        """Test a failing import in the child means no version."""

        def fake_run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="ImportError: DLL load failed")

        monkeypatch.setattr(bootstrap_module.subprocess, "run", fake_run)

        assert query_webengine_version() is None
