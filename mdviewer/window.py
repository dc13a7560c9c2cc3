"""Main window: the Qt WebEngine display surface and the controls around it.

Importing this module loads Qt WebEngine, so it must only be imported after
the runtime bootstrap has succeeded.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QObject, QRunnable, QStandardPaths, Qt, QThreadPool, QUrl, Signal
from PySide6.QtGui import QAction, QIcon, QKeySequence
from PySide6.QtPrintSupport import QPrintDialog, QPrinter
from PySide6.QtWebEngineCore import QWebEnginePage, QWebEngineProfile, QWebEngineSettings
from PySide6.QtWebEngineWidgets import QWebEngineView
from PySide6.QtWidgets import (
    QApplication,
    QFileDialog,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QProgressBar,
    QPushButton,
    QSizePolicy,
    QVBoxLayout,
    QWidget,
)

from mdviewer.config import ViewerConfig, save_last_directory
from mdviewer.pipeline import DocumentPipeline, LoadOutcome, PipelineState
from mdviewer.render import MarkdownRenderer
from mdviewer.template import placeholder_html

logger = logging.getLogger(__name__)

MARKDOWN_FILE_FILTER = "Markdown files (*.md *.markdown *.mdown *.mkd *.txt);;All files (*)"
STATUS_INFO_STYLE = (
    "background: #e0f7fa; border: 1px solid #87ceeb; color: #00008b; padding: 6px; border-radius: 3px;"
)
STATUS_ERROR_STYLE = (
    "background: #ffe4e1; border: 1px solid #f08080; color: #8b0000; padding: 6px; border-radius: 3px;"
)


def webengine_data_directory() -> Path:
    """Per-application directory holding the isolated WebEngine profile."""
    base = QStandardPaths.writableLocation(QStandardPaths.StandardLocation.GenericDataLocation)
    root = Path(base) if base else Path.home() / ".local" / "share"
    return root / "mdviewer" / "WebEngine"


def create_isolated_profile(parent: QObject, storage_dir: Path | None = None) -> QWebEngineProfile:
    """Create a named profile whose storage never mixes with other Qt apps."""
    storage_dir = storage_dir or webengine_data_directory()
    # Failure to create the directory is a fatal startup error for the caller.
    storage_dir.mkdir(parents=True, exist_ok=True)
    profile = QWebEngineProfile("mdviewer", parent)
    profile.setPersistentStoragePath(str(storage_dir))
    profile.setCachePath(str(storage_dir / "cache"))
    return profile


def profile_owner(fallback: QObject) -> QObject:
    """Owner for the WebEngine profile; it must outlive every page using it."""
    app = QApplication.instance()
    return app if app is not None else fallback


def release_page(view) -> None:
    """Detach the view's page and schedule its deletion ahead of the profile."""
    page = view.page()
    if page is None:
        return
    view.setPage(None)
    page.deleteLater()


class WebEngineDisplay:
    """Display surface backed by a QWebEngineView."""

    def __init__(self, view: QWebEngineView):
        self.view = view

    def is_ready(self) -> bool:
        return self.view.page() is not None

    def load_html(self, html_doc: str, base_dir: Path | None = None) -> None:
        # Relative image links in the document resolve against its folder.
        base_url = QUrl.fromLocalFile(f"{base_dir}/") if base_dir is not None else QUrl()
        self.view.setHtml(html_doc, base_url)

    def run_script(self, script: str) -> None:
        self.view.page().runJavaScript(script)


class DocumentLoadWorkerSignals(QObject):
    """Signals emitted by background document load workers."""

    finished = Signal(int, object)


class DocumentLoadWorker(QRunnable):
    """Read and render one markdown file off the UI thread."""

    def __init__(self, generation: int, work: Callable[[], LoadOutcome]):
        super().__init__()
        self.generation = generation
        self.work = work
        self.signals = DocumentLoadWorkerSignals()

    def run(self) -> None:
        # `work` already converts failures into an outcome.
        self.signals.finished.emit(self.generation, self.work())


class MdViewerWindow(QMainWindow):
    def __init__(
        self,
        config: ViewerConfig,
        renderer: MarkdownRenderer,
        config_path: Path | None = None,
        app_icon: QIcon | None = None,
    ):
        super().__init__()
        self.config = config
        self.config_path = config_path
        self.last_directory = config.last_directory
        self._load_pool = QThreadPool(self)
        self._load_pool.setMaxThreadCount(1)
        self._active_load_workers: set[DocumentLoadWorker] = set()
        # Kept alive until QWebEngineView reports printFinished.
        self._printer: QPrinter | None = None

        self.setWindowTitle("mdviewer")
        if app_icon is not None:
            self.setWindowIcon(app_icon)
        self.resize(1100, 860)
        self.setAcceptDrops(True)

        self.profile = create_isolated_profile(profile_owner(self))
        self.view = QWebEngineView()
        self.view.setPage(QWebEnginePage(self.profile, self.view))
        # Drops are handled by the window; the view would navigate to the file.
        self.view.setAcceptDrops(False)
        settings = self.view.settings()
        settings.setAttribute(QWebEngineSettings.WebAttribute.LocalContentCanAccessFileUrls, True)
        if hasattr(QWebEngineSettings.WebAttribute, "PrintElementBackgrounds"):
            settings.setAttribute(QWebEngineSettings.WebAttribute.PrintElementBackgrounds, True)
        self.view.printRequested.connect(self._on_print_requested)
        self.view.printFinished.connect(self._on_print_finished)
        self.display = WebEngineDisplay(self.view)

        self.open_btn = QPushButton("Open")
        self.open_btn.setToolTip("Open a markdown file (Ctrl+O)")
        self.open_btn.clicked.connect(self._open_file_dialog)

        self.reload_btn = QPushButton("Reload")
        self.reload_btn.setToolTip("Read the file again and re-render it (F5)")
        self.reload_btn.clicked.connect(self._reload)

        self.print_btn = QPushButton("Print")
        self.print_btn.setToolTip("Print the rendered document (Ctrl+P)")
        self.print_btn.clicked.connect(self._print)

        self.path_box = QLineEdit()
        self.path_box.setReadOnly(True)
        self.path_box.setPlaceholderText("Open or drop a markdown file")

        self.spinner = QProgressBar()
        # A 0..0 range turns the progress bar into a busy indicator.
        self.spinner.setRange(0, 0)
        self.spinner.setMaximumWidth(90)
        self.spinner.setTextVisible(False)
        self.spinner.setVisible(False)

        self.status_label = QLabel("")
        self.status_label.setWordWrap(True)
        self.status_label.setTextInteractionFlags(Qt.TextInteractionFlag.TextSelectableByMouse)
        self.status_label.setVisible(False)

        top_bar = QHBoxLayout()
        top_bar.setContentsMargins(0, 0, 0, 0)
        top_bar.addWidget(self.open_btn)
        top_bar.addWidget(self.reload_btn)
        top_bar.addWidget(self.print_btn)
        top_bar.addWidget(self.path_box, 1)
        top_bar.addWidget(self.spinner)

        top_bar_widget = QWidget()
        top_bar_widget.setLayout(top_bar)
        top_bar_widget.setSizePolicy(QSizePolicy.Expanding, QSizePolicy.Fixed)

        central = QWidget()
        layout = QVBoxLayout(central)
        layout.setContentsMargins(6, 6, 6, 6)
        layout.setSpacing(6)
        layout.addWidget(top_bar_widget)
        layout.addWidget(self.status_label)
        layout.addWidget(self.view, 1)
        self.setCentralWidget(central)

        for shortcut, handler in (
            (QKeySequence.StandardKey.Open, self._open_file_dialog),
            (QKeySequence.StandardKey.Refresh, self._reload),
            (QKeySequence.StandardKey.Print, self._print),
        ):
            action = QAction(self)
            action.setShortcut(shortcut)
            action.triggered.connect(handler)
            self.addAction(action)

        self.pipeline = DocumentPipeline(
            renderer,
            self.display,
            submit=self._submit_load,
            on_state_changed=self._apply_state,
            on_notice=self._show_notice,
        )
        self.display.load_html(placeholder_html("Open or drop a markdown file to preview it."))
        self._apply_state(self.pipeline.state)

    def _apply_state(self, state: PipelineState) -> None:
        """Derive every control's state from the pipeline state."""
        affordances = state.affordances()
        self.open_btn.setEnabled(affordances.can_open)
        self.reload_btn.setEnabled(affordances.can_reload)
        self.print_btn.setEnabled(affordances.can_print)
        self.spinner.setVisible(affordances.busy)
        if state.current_path is not None:
            self.path_box.setText(str(state.current_path))
            self.setWindowTitle(f"{state.current_path.name} - mdviewer")
        if state.status is None:
            self.status_label.setVisible(False)
        else:
            self.status_label.setText(state.status.text)
            self.status_label.setStyleSheet(STATUS_ERROR_STYLE if state.status.is_error else STATUS_INFO_STYLE)
            self.status_label.setVisible(True)

    def _show_notice(self, message: str, is_error: bool) -> None:
        if is_error:
            QMessageBox.critical(self, "Error", message)
        else:
            QMessageBox.information(self, "Notice", message)

    def _submit_load(self, generation: int, work: Callable[[], LoadOutcome], _done) -> None:
        worker = DocumentLoadWorker(generation, work)
        worker.signals.finished.connect(self._on_load_finished)
        self._active_load_workers.add(worker)
        self._load_pool.start(worker)

    def _on_load_finished(self, generation: int, outcome: LoadOutcome) -> None:
        for worker in list(self._active_load_workers):
            if worker.generation == generation:
                self._active_load_workers.discard(worker)
        self.pipeline.complete(generation, outcome)

    def load_path(self, path: Path | str) -> None:
        path = Path(path).expanduser()
        if self.pipeline.load_document(path) is not None:
            self.last_directory = path.resolve().parent

    def open_startup_path(self, path_text: str) -> None:
        """Open the command-line argument, reporting a missing file."""
        path = Path(path_text).expanduser()
        if not path.is_file():
            logger.warning("Startup file not found: %s", path)
            self.pipeline.set_status(f"File not found: {path}", is_error=True)
            return
        self.load_path(path)

    def _open_file_dialog(self, _checked: bool = False) -> None:
        file_name, _selected_filter = QFileDialog.getOpenFileName(
            self,
            "Open markdown file",
            str(self.last_directory),
            MARKDOWN_FILE_FILTER,
        )
        if file_name:
            self.load_path(file_name)

    def _reload(self, _checked: bool = False) -> None:
        if self.pipeline.state.affordances().can_reload:
            self.pipeline.reload()

    def _print(self, _checked: bool = False) -> None:
        self.pipeline.print_document()

    def _on_print_requested(self) -> None:
        printer = QPrinter(QPrinter.PrinterMode.HighResolution)
        dialog = QPrintDialog(printer, self)
        if dialog.exec() != QPrintDialog.DialogCode.Accepted:
            return
        self._printer = printer
        self.pipeline.set_status("Printing...")
        self.view.print(printer)

    def _on_print_finished(self, success: bool) -> None:
        self._printer = None
        if success:
            self.pipeline.clear_status()
        else:
            logger.warning("Printing %s failed", self.pipeline.state.current_path)
            self.pipeline.set_status("Printing failed.", is_error=True)

    @staticmethod
    def _first_local_file(mime_data) -> Path | None:
        if not mime_data.hasUrls():
            return None
        for url in mime_data.urls():
            if url.isLocalFile():
                return Path(url.toLocalFile())
        return None

    def dragEnterEvent(self, event) -> None:  # noqa: N802
        if self._first_local_file(event.mimeData()) is not None:
            event.acceptProposedAction()
        else:
            event.ignore()

    def dragMoveEvent(self, event) -> None:  # noqa: N802
        self.dragEnterEvent(event)

    def dropEvent(self, event) -> None:  # noqa: N802
        path = self._first_local_file(event.mimeData())
        if path is None:
            event.ignore()
            return
        event.acceptProposedAction()
        self.load_path(path)

    def closeEvent(self, event) -> None:  # noqa: N802
        save_last_directory(self.last_directory, self.config_path)
        release_page(self.view)
        super().closeEvent(event)
