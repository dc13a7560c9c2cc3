"""File path in, rendered document on the display surface out.

Open, drop, reload and the startup argument all go through
`DocumentPipeline.load_document`. The slow part of a load (reading the file
and rendering it) runs through the `submit` callable, which the window backs
with a worker thread; the finished `LoadOutcome` comes back through
`complete`, where only the most recent request is allowed to reach the
display.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from mdviewer.render import FailureCategory, MarkdownRenderer, RenderFailure, RenderSuccess
from mdviewer.template import fallback_panel, wrap_document

logger = logging.getLogger(__name__)

PRINT_SCRIPT = "window.print();"


class DisplaySurface(Protocol):
    def is_ready(self) -> bool: ...

    def load_html(self, html_doc: str, base_dir: Path | None = None) -> None: ...

    def run_script(self, script: str) -> None: ...


@dataclass(frozen=True)
class StatusMessage:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class Affordances:
    can_open: bool
    can_reload: bool
    can_print: bool
    busy: bool


@dataclass
class PipelineState:
    current_path: Path | None = None
    loading: bool = False
    status: StatusMessage | None = None

    def affordances(self) -> Affordances:
        has_document = self.current_path is not None
        return Affordances(
            can_open=not self.loading,
            can_reload=has_document and not self.loading,
            can_print=has_document,
            busy=self.loading,
        )


@dataclass(frozen=True)
class LoadOutcome:
    path: Path
    html_doc: str | None
    status: StatusMessage | None = None


def read_markdown(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def build_document(path: Path, renderer: MarkdownRenderer) -> LoadOutcome:
    """Read, render and wrap one file. Safe to run off the UI thread."""
    try:
        markdown_text = read_markdown(path)
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return LoadOutcome(path, None, StatusMessage(f"Error loading file: {exc}", is_error=True))

    result = renderer.render(markdown_text)
    if isinstance(result, RenderSuccess):
        return LoadOutcome(path, wrap_document(result.html, path.name))

    if result.category is FailureCategory.CONNECTIVITY:
        status_text = f"Connection error: {result.message}"
    else:
        status_text = f"Rendering error: {result.message}"
    return LoadOutcome(
        path,
        wrap_document(fallback_panel(result), path.name),
        StatusMessage(status_text, is_error=True),
    )


def _run_inline(generation: int, work: Callable[[], LoadOutcome], done: Callable[[int, LoadOutcome], bool]) -> None:
    done(generation, work())


class DocumentPipeline:
    """Owns the current document and everything the UI derives from it."""

    def __init__(
        self,
        renderer: MarkdownRenderer,
        display: DisplaySurface,
        *,
        submit: Callable[[int, Callable[[], LoadOutcome], Callable[[int, LoadOutcome], bool]], None] | None = None,
        on_state_changed: Callable[[PipelineState], None] | None = None,
        on_notice: Callable[[str, bool], None] | None = None,
    ) -> None:
        self.renderer = renderer
        self.display = display
        self.state = PipelineState()
        self._submit = submit or _run_inline
        self._on_state_changed = on_state_changed
        self._on_notice = on_notice
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def _changed(self) -> None:
        if self._on_state_changed is not None:
            self._on_state_changed(self.state)

    def _notice(self, message: str, is_error: bool = False) -> None:
        logger.info(message)
        if self._on_notice is not None:
            self._on_notice(message, is_error)

    def set_status(self, text: str, *, is_error: bool = False) -> None:
        self.state.status = StatusMessage(text, is_error)
        self._changed()

    def clear_status(self) -> None:
        self.state.status = None
        self._changed()

    def load_document(self, path: Path | str) -> int | None:
        """Start loading `path`; returns the request generation or None."""
        path = Path(path)
        if not path.is_file():
            return None
        path = path.resolve()

        self._generation += 1
        generation = self._generation
        self.state.current_path = path
        self.state.loading = True
        self.state.status = StatusMessage(f"Rendering {path.name}...")
        self._changed()

        renderer = self.renderer

        def work() -> LoadOutcome:
            try:
                return build_document(path, renderer)
            except Exception as exc:  # noqa: BLE001 - a failed load must still show the file
                logger.exception("Unexpected failure while loading %s", path)
                return self._unexpected_failure_outcome(path, exc)

        try:
            self._submit(generation, work, self.complete)
        except Exception as exc:
            logger.exception("Could not start loading %s", path)
            self.complete(generation, LoadOutcome(path, None, StatusMessage(f"Error loading file: {exc}", True)))
        return generation

    @staticmethod
    def _unexpected_failure_outcome(path: Path, exc: Exception) -> LoadOutcome:
        message = f"{type(exc).__name__}: {exc}"
        try:
            source_text = read_markdown(path)
        except OSError:
            source_text = ""
        failure = RenderFailure(FailureCategory.UNKNOWN, message, source_text)
        return LoadOutcome(
            path,
            wrap_document(fallback_panel(failure), path.name),
            StatusMessage(f"Rendering error: {message}", is_error=True),
        )

    def complete(self, generation: int, outcome: LoadOutcome) -> bool:
        """Apply a finished load if it is still the newest request."""
        if generation != self._generation:
            logger.debug("Dropping stale render of %s (request %s, newest %s)", outcome.path, generation, self._generation)
            return False
        try:
            self.state.status = outcome.status
            if outcome.html_doc is not None:
                self.display.load_html(outcome.html_doc, outcome.path.parent)
        except Exception as exc:
            logger.exception("Display surface rejected %s", outcome.path)
            self.state.status = StatusMessage(f"Error loading file: {exc}", is_error=True)
        finally:
            self.state.loading = False
            self._changed()
        return True

    def reload(self) -> int | None:
        if self.state.current_path is None:
            return None
        return self.load_document(self.state.current_path)

    def print_document(self) -> bool:
        """Ask the display surface to print; notice instead when nothing is loaded."""
        if self.state.current_path is None or not self.display.is_ready():
            self._notice("There is no document to print.")
            return False
        try:
            self.display.run_script(PRINT_SCRIPT)
        except Exception as exc:
            logger.exception("Print request failed")
            self._notice(f"Error while printing: {exc}", True)
            return False
        return True
