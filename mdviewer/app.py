"""Command-line entry point: logging, runtime bootstrap, then the window."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import traceback
from dataclasses import replace
from pathlib import Path

from PySide6.QtCore import QEventLoop, QObject, QRunnable, Qt, QThread, QThreadPool, Signal
from PySide6.QtGui import QColor, QIcon, QPainter, QPen, QPixmap
from PySide6.QtWidgets import QApplication, QMessageBox, QSplashScreen

from mdviewer import __version__
from mdviewer.bootstrap import BootstrapStatus, RuntimeBootstrapper, runtime_profile_from_config
from mdviewer.config import ViewerConfig, config_file_path, load_config
from mdviewer.errors import RuntimeUnavailableError
from mdviewer.render import build_renderer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    else:
        logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def build_viewer_icon() -> QPixmap:
    """Draw the application icon: a page with an "M" and a down arrow."""
    pixmap = QPixmap(64, 64)
    pixmap.fill(Qt.GlobalColor.transparent)

    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.RenderHint.Antialiasing)
    painter.setPen(Qt.PenStyle.NoPen)
    painter.setBrush(QColor("#24292f"))
    painter.drawRoundedRect(4, 8, 56, 48, 8, 8)

    pen = QPen(QColor("#ffffff"))
    pen.setWidth(4)
    pen.setCapStyle(Qt.PenCapStyle.RoundCap)
    pen.setJoinStyle(Qt.PenJoinStyle.RoundJoin)
    painter.setPen(pen)
    painter.setBrush(Qt.BrushStyle.NoBrush)

    painter.drawLine(14, 42, 14, 22)
    painter.drawLine(14, 22, 22, 34)
    painter.drawLine(22, 34, 30, 22)
    painter.drawLine(30, 22, 30, 42)

    painter.drawLine(42, 22, 42, 38)
    painter.drawLine(37, 33, 42, 38)
    painter.drawLine(47, 33, 42, 38)
    painter.end()
    return pixmap


def install_exception_hooks() -> None:
    """Report unhandled exceptions instead of silently dying."""

    def handle_exception(exc_type, exc_value, exc_tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.error("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))
        app = QApplication.instance()
        # Message boxes may only be created on the GUI thread.
        if app is not None and QThread.currentThread() is app.thread():
            summary = "".join(traceback.format_exception_only(exc_type, exc_value)).strip()
            QMessageBox.critical(None, "Unexpected error", f"Unhandled exception:\n{summary}")

    def handle_thread_exception(args: threading.ExceptHookArgs) -> None:
        name = args.thread.name if args.thread is not None else "unknown"
        logger.error(
            "Unhandled exception in thread %s",
            name,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = handle_exception
    threading.excepthook = handle_thread_exception


class BootstrapWorkerSignals(QObject):
    """Signals emitted by the runtime bootstrap worker."""

    status = Signal(str)
    finished = Signal(object, object)


class BootstrapWorker(QRunnable):
    """Run the blocking runtime bootstrap off the UI thread."""

    def __init__(self, config: ViewerConfig):
        super().__init__()
        self.config = config
        self.signals = BootstrapWorkerSignals()

    def run(self) -> None:
        bootstrapper = RuntimeBootstrapper(
            runtime_profile_from_config(self.config),
            download_timeout_s=self.config.download_timeout,
            install_timeout_s=self.config.install_timeout,
            on_status=self.signals.status.emit,
        )
        try:
            status = bootstrapper.ensure_runtime()
        except Exception as exc:
            self.signals.finished.emit(None, exc)
            return
        self.signals.finished.emit(status, None)


def run_bootstrap(config: ViewerConfig, icon: QPixmap) -> BootstrapStatus:
    """Run the bootstrap while a splash screen keeps the UI responsive."""
    splash = QSplashScreen(icon.scaled(160, 160, Qt.AspectRatioMode.KeepAspectRatio))
    splash.show()
    splash.showMessage("Checking the browser runtime...", Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignHCenter)

    loop = QEventLoop()
    result: dict[str, object] = {}

    def on_status(message: str) -> None:
        splash.showMessage(message, Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignHCenter)

    def on_finished(status, error) -> None:
        result["status"] = status
        result["error"] = error
        loop.quit()

    pool = QThreadPool()
    worker = BootstrapWorker(config)
    worker.signals.status.connect(on_status, Qt.ConnectionType.QueuedConnection)
    worker.signals.finished.connect(on_finished, Qt.ConnectionType.QueuedConnection)
    pool.start(worker)
    loop.exec()
    pool.waitForDone()
    splash.close()

    error = result.get("error")
    if error is not None:
        raise error
    return result["status"]


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdviewer",
        description="Preview a markdown file rendered by the GitHub markdown API.",
    )
    parser.add_argument("path", nargs="?", default=None, help="Markdown file to open.")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Render locally with markdown-it instead of calling the GitHub API.",
    )
    parser.add_argument(
        "--skip-runtime-check",
        action="store_true",
        help="Do not check for (or install) the embedded browser runtime.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Configuration file (default: ~/{config_file_path().name}).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    configure_logging(args.verbose)

    config_path = args.config.expanduser() if args.config is not None else config_file_path()
    config = load_config(config_path)
    if args.offline:
        config = replace(config, render_backend="local")

    # Qt WebEngine is imported after the application exists, which it only
    # tolerates when context sharing is enabled up front.
    QApplication.setAttribute(Qt.ApplicationAttribute.AA_ShareOpenGLContexts)
    app = QApplication(sys.argv[:1])
    app.setApplicationName("mdviewer")
    app.setDesktopFileName("mdviewer")
    icon_pixmap = build_viewer_icon()
    app_icon = QIcon(icon_pixmap)
    app.setWindowIcon(app_icon)
    install_exception_hooks()

    if config.check_runtime and not args.skip_runtime_check:
        try:
            status = run_bootstrap(config, icon_pixmap)
        except RuntimeUnavailableError as exc:
            logger.error("Runtime unavailable: %s", exc)
            QMessageBox.critical(None, "Fatal error", str(exc))
            return 1
        except Exception as exc:
            logger.exception("Runtime bootstrap failed")
            QMessageBox.critical(None, "Fatal error", f"Could not check the browser runtime:\n{exc}")
            return 1
        if status is BootstrapStatus.CANCELLED:
            QMessageBox.information(
                None,
                "Installation cancelled",
                "The browser runtime installation was cancelled. mdviewer cannot start without it.",
            )
            return 1

    try:
        # Qt WebEngine is only imported once the runtime is known to work.
        from mdviewer.window import MdViewerWindow

        window = MdViewerWindow(config, build_renderer(config), config_path, app_icon)
    except Exception as exc:
        logger.exception("Could not create the main window")
        QMessageBox.critical(None, "Fatal error", f"Error while opening the main window:\n{exc}")
        return 1

    window.show()
    if args.path is not None:
        window.open_startup_path(args.path)
    return app.exec()
