"""Make sure the embedded browser runtime is usable before the viewer starts.

The runtime is probed in a child interpreter, since a broken Qt WebEngine
installation tends to fail at import time with a native loader error that
would otherwise take the whole process down. When the probe fails and an
installer is configured, the installer is downloaded (or reused from the
temp directory when it is younger than a day), run silently, and run again
interactively with elevation if the silent pass did not succeed.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from mdviewer.errors import ElevationCancelledError, InstallerDownloadError, RuntimeUnavailableError

logger = logging.getLogger(__name__)

INSTALLER_MAX_AGE_SECONDS = 24 * 60 * 60
DOWNLOAD_TIMEOUT_SECONDS = 30.0
INSTALL_TIMEOUT_SECONDS = 120.0
PROBE_TIMEOUT_SECONDS = 30.0
DEFAULT_SILENT_ARGS = ("/install", "/quiet", "/norestart")
DEFAULT_INTERACTIVE_ARGS = ("/install",)

# pkexec exits with 126 when the authentication dialog is dismissed.
PKEXEC_DISMISSED = 126
ERROR_CANCELLED = 1223
SEE_MASK_NOCLOSEPROCESS = 0x00000040
SW_SHOWNORMAL = 1
WAIT_OBJECT_0 = 0

_WEBENGINE_VERSION_PROBE = "import PySide6, PySide6.QtWebEngineCore; print(PySide6.__version__)"


def query_webengine_version(timeout_s: float = PROBE_TIMEOUT_SECONDS) -> str | None:
    """Return the usable Qt WebEngine (PySide6) version, or None."""
    result = subprocess.run(
        [sys.executable, "-c", _WEBENGINE_VERSION_PROBE],
        capture_output=True,
        text=True,
        check=False,
        timeout=timeout_s,
    )
    if result.returncode != 0:
        logger.debug("WebEngine probe failed: %s", (result.stderr or "").strip()[-400:])
        return None
    return (result.stdout or "").strip() or None


class BootstrapStatus(Enum):
    READY = "ready"
    INSTALLED = "installed"
    CANCELLED = "cancelled"


class InstallAttempt(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RuntimeProfile:
    """Where to fetch the runtime installer and how to run it."""

    name: str
    installer_url: str
    installer_name: str
    silent_args: tuple[str, ...] = DEFAULT_SILENT_ARGS
    interactive_args: tuple[str, ...] = DEFAULT_INTERACTIVE_ARGS


@dataclass
class BootstrapState:
    runtime_detected: bool = False
    runtime_version: str | None = None
    installer_path: Path | None = None


def installer_name_for_url(url: str) -> str:
    """Derive a stable cache file name from an installer URL."""
    base = posixpath.basename(urllib.parse.urlsplit(url).path)
    if base and "." in base:
        return base
    return "mdviewer-runtime-setup.exe" if sys.platform == "win32" else "mdviewer-runtime-setup"


def split_installer_args(text: str, posix: bool | None = None) -> tuple[str, ...]:
    """Split a configured argument string; Windows paths keep their backslashes."""
    if posix is None:
        posix = os.name != "nt"
    return tuple(shlex.split(text or "", posix=posix))


def runtime_profile_from_config(config) -> RuntimeProfile | None:
    """Build the installer profile for a `ViewerConfig`; None if none is set."""
    url = (config.installer_url or "").strip()
    if not url:
        return None
    return RuntimeProfile(
        name="Qt WebEngine runtime",
        installer_url=url,
        installer_name=installer_name_for_url(url),
        silent_args=split_installer_args(config.installer_silent_args),
        interactive_args=split_installer_args(config.installer_interactive_args),
    )


class LaunchedProcess(Protocol):
    def wait(self, timeout_s: float) -> int | None: ...


class _PopenProcess:
    def __init__(self, proc: subprocess.Popen):
        self.proc = proc

    def wait(self, timeout_s: float) -> int | None:
        # A process that outlives the timeout is left running.
        try:
            return self.proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            return None


class _PkexecProcess(_PopenProcess):
    def wait(self, timeout_s: float) -> int | None:
        code = super().wait(timeout_s)
        if code == PKEXEC_DISMISSED:
            raise ElevationCancelledError("Authentication dialog dismissed")
        return code


class _WindowsElevatedProcess:
    def __init__(self, handle: int):
        self.handle = handle

    def wait(self, timeout_s: float) -> int | None:
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        kernel32.WaitForSingleObject.argtypes = [wintypes.HANDLE, wintypes.DWORD]
        kernel32.WaitForSingleObject.restype = wintypes.DWORD
        kernel32.GetExitCodeProcess.argtypes = [wintypes.HANDLE, ctypes.POINTER(wintypes.DWORD)]
        kernel32.GetExitCodeProcess.restype = wintypes.BOOL
        kernel32.CloseHandle.argtypes = [wintypes.HANDLE]
        kernel32.CloseHandle.restype = wintypes.BOOL
        try:
            if kernel32.WaitForSingleObject(self.handle, int(timeout_s * 1000)) != WAIT_OBJECT_0:
                return None
            exit_code = wintypes.DWORD()
            if not kernel32.GetExitCodeProcess(self.handle, ctypes.byref(exit_code)):
                return None
            return int(exit_code.value)
        finally:
            kernel32.CloseHandle(self.handle)


def _shell_execute_elevated(path: Path, args: tuple[str, ...]) -> _WindowsElevatedProcess:
    import ctypes
    from ctypes import wintypes

    class ShellExecuteInfo(ctypes.Structure):
        _fields_ = [
            ("cbSize", wintypes.DWORD),
            ("fMask", ctypes.c_ulong),
            ("hwnd", wintypes.HWND),
            ("lpVerb", wintypes.LPCWSTR),
            ("lpFile", wintypes.LPCWSTR),
            ("lpParameters", wintypes.LPCWSTR),
            ("lpDirectory", wintypes.LPCWSTR),
            ("nShow", ctypes.c_int),
            ("hInstApp", wintypes.HINSTANCE),
            ("lpIDList", ctypes.c_void_p),
            ("lpClass", wintypes.LPCWSTR),
            ("hkeyClass", wintypes.HKEY),
            ("dwHotKey", wintypes.DWORD),
            ("hIconOrMonitor", wintypes.HANDLE),
            ("hProcess", wintypes.HANDLE),
        ]

    shell32 = ctypes.WinDLL("shell32", use_last_error=True)
    shell32.ShellExecuteExW.argtypes = [ctypes.POINTER(ShellExecuteInfo)]
    shell32.ShellExecuteExW.restype = wintypes.BOOL

    info = ShellExecuteInfo()
    info.cbSize = ctypes.sizeof(info)
    info.fMask = SEE_MASK_NOCLOSEPROCESS
    info.lpVerb = "runas"
    info.lpFile = str(path)
    info.lpParameters = subprocess.list2cmdline(list(args))
    info.nShow = SW_SHOWNORMAL
    if not shell32.ShellExecuteExW(ctypes.byref(info)):
        error = ctypes.get_last_error()
        if error == ERROR_CANCELLED:
            raise ElevationCancelledError("UAC prompt declined")
        raise ctypes.WinError(error)
    if not info.hProcess:
        raise OSError(f"No process handle returned for {path}")
    return _WindowsElevatedProcess(info.hProcess)


class InstallerLauncher:
    """Start installer processes, optionally through the OS elevation prompt."""

    def start(self, path: Path, args: tuple[str, ...], *, elevated: bool) -> LaunchedProcess:
        if not elevated:
            return _PopenProcess(subprocess.Popen([str(path), *args]))
        if sys.platform == "win32":
            return _shell_execute_elevated(path, args)
        pkexec = shutil.which("pkexec")
        if pkexec is None:
            raise OSError("pkexec is not available for an elevated install")
        return _PkexecProcess(subprocess.Popen([pkexec, str(path), *args]))


class RuntimeBootstrapper:
    """Detect, download and install the embedded browser runtime."""

    def __init__(
        self,
        profile: RuntimeProfile | None,
        *,
        probe: Callable[[], str | None] = query_webengine_version,
        launcher: InstallerLauncher | None = None,
        opener: Callable = urllib.request.urlopen,
        temp_dir: Path | None = None,
        download_timeout_s: float = DOWNLOAD_TIMEOUT_SECONDS,
        install_timeout_s: float = INSTALL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self.profile = profile
        self.download_timeout_s = download_timeout_s
        self.install_timeout_s = install_timeout_s
        self.state = BootstrapState()
        self._probe = probe
        self._launcher = launcher or InstallerLauncher()
        self._opener = opener
        self._temp_dir = temp_dir
        self._clock = clock
        self._on_status = on_status

    def _report(self, message: str) -> None:
        logger.info(message)
        if self._on_status is not None:
            self._on_status(message)

    def is_runtime_installed(self) -> bool:
        try:
            version = self._probe()
        except Exception as exc:  # noqa: BLE001 - any probe failure means "not installed"
            logger.debug("Runtime probe raised %s: %s", type(exc).__name__, exc)
            version = None
        self.state.runtime_detected = bool(version)
        self.state.runtime_version = version or None
        return self.state.runtime_detected

    def installer_cache_path(self) -> Path:
        if self.profile is None:
            raise RuntimeUnavailableError("No runtime installer is configured")
        temp_dir = self._temp_dir if self._temp_dir is not None else Path(tempfile.gettempdir())
        return temp_dir / self.profile.installer_name

    def cached_installer_is_fresh(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return False
        return (self._clock() - mtime) < INSTALLER_MAX_AGE_SECONDS

    def download_installer(self, target: Path) -> None:
        """Stream the installer to `target`; raises InstallerDownloadError."""
        url = self.profile.installer_url
        partial = target.with_name(target.name + ".part")
        req = urllib.request.Request(url, headers={"User-Agent": "mdviewer-bootstrap"}, method="GET")
        try:
            with self._opener(req, timeout=float(self.download_timeout_s)) as resp:
                status = int(getattr(resp, "status", 200))
                if not 200 <= status < 300:
                    raise InstallerDownloadError(f"Could not download {url}: HTTP {status}")
                with partial.open("wb") as fh:
                    shutil.copyfileobj(resp, fh)
            os.replace(partial, target)
        except InstallerDownloadError:
            partial.unlink(missing_ok=True)
            raise
        except Exception as e:  # noqa: BLE001 - every transport failure is fatal here
            partial.unlink(missing_ok=True)
            raise InstallerDownloadError(f"Could not download {url}: {type(e).__name__}: {e}") from e
        if os.name == "posix":
            target.chmod(0o755)
        logger.info("Downloaded runtime installer to %s", target)

    def run_installer(self, path: Path, *, elevated: bool) -> InstallAttempt:
        args = self.profile.interactive_args if elevated else self.profile.silent_args
        mode = "elevated" if elevated else "silent"
        try:
            process = self._launcher.start(path, args, elevated=elevated)
            exit_code = process.wait(self.install_timeout_s)
        except ElevationCancelledError as exc:
            logger.info("Elevated install cancelled: %s", exc)
            return InstallAttempt.CANCELLED
        except OSError as exc:
            logger.warning("Could not run %s installer %s: %s", mode, path, exc)
            return InstallAttempt.FAILED
        if exit_code is None:
            logger.warning("%s installer did not finish within %.0fs", mode.capitalize(), self.install_timeout_s)
            return InstallAttempt.FAILED
        if exit_code != 0:
            logger.warning("%s installer exited with status %s", mode.capitalize(), exit_code)
            return InstallAttempt.FAILED
        return InstallAttempt.SUCCEEDED

    def ensure_runtime(self) -> BootstrapStatus:
        """Return once the runtime is usable; raise if it cannot be made so."""
        if self.is_runtime_installed():
            logger.debug("Runtime present (version %s)", self.state.runtime_version)
            return BootstrapStatus.READY
        if self.profile is None:
            raise RuntimeUnavailableError(
                "Qt WebEngine is not available and no runtime installer is configured. "
                "Install PySide6 with Qt WebEngine support and try again."
            )

        self._report(f"Installing {self.profile.name}...")
        installer = self.installer_cache_path()
        self.state.installer_path = installer
        if self.cached_installer_is_fresh(installer):
            logger.info("Reusing cached installer %s", installer)
        else:
            self.download_installer(installer)

        attempt = self.run_installer(installer, elevated=False)
        if attempt is not InstallAttempt.SUCCEEDED:
            self._report(f"Silent install failed; retrying {self.profile.name} install with elevation...")
            attempt = self.run_installer(installer, elevated=True)

        if attempt is InstallAttempt.CANCELLED:
            self._report(f"{self.profile.name} installation was cancelled by the user.")
            if self.is_runtime_installed():
                return BootstrapStatus.INSTALLED
            return BootstrapStatus.CANCELLED

        if not self.is_runtime_installed():
            raise RuntimeUnavailableError(f"{self.profile.name} was not installed correctly.")
        self._report(f"{self.profile.name} installed.")
        return BootstrapStatus.INSTALLED
