"""Markdown to HTML rendering backends."""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Union

from markdown_it import MarkdownIt
from mdit_py_plugins.tasklists import tasklists_plugin

from mdviewer.jsonstr import json_object

logger = logging.getLogger(__name__)

GITHUB_MARKDOWN_ENDPOINT = "https://api.github.com/markdown"
DEFAULT_RENDER_MODE = "gfm"
DEFAULT_RENDER_TIMEOUT = 10.0
DEFAULT_USER_AGENT = "mdviewer"


class FailureCategory(str, Enum):
    CONNECTIVITY = "connectivity"
    SERVER_ERROR = "server-error"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class RenderSuccess:
    html: str


@dataclass(frozen=True, slots=True)
class RenderFailure:
    category: FailureCategory
    message: str
    source_text: str


RenderResult = Union[RenderSuccess, RenderFailure]


class MarkdownRenderer(Protocol):
    def render(self, markdown_text: str) -> RenderResult: ...


class GitHubMarkdownClient:
    """Render markdown through GitHub's `POST /markdown` API."""

    def __init__(
        self,
        endpoint: str = GITHUB_MARKDOWN_ENDPOINT,
        *,
        mode: str = DEFAULT_RENDER_MODE,
        timeout_s: float = DEFAULT_RENDER_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        token: str | None = None,
        opener: Callable = urllib.request.urlopen,
    ) -> None:
        self.endpoint = endpoint
        self.mode = mode
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self.token = token
        self._opener = opener

    def build_request(self, markdown_text: str) -> urllib.request.Request:
        payload = json_object({"text": markdown_text, "mode": self.mode})
        headers = {
            "Accept": "text/html",
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": self.user_agent,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return urllib.request.Request(
            self.endpoint,
            data=payload.encode("utf-8"),
            headers=headers,
            method="POST",
        )

    def render(self, markdown_text: str) -> RenderResult:
        req = self.build_request(markdown_text)
        try:
            with self._opener(req, timeout=float(self.timeout_s)) as resp:
                status = int(getattr(resp, "status", 200))
                if not 200 <= status < 300:
                    reason = getattr(resp, "reason", "") or ""
                    return self._failure(FailureCategory.SERVER_ERROR, f"HTTP {status}: {reason}".strip(), markdown_text)
                charset = resp.headers.get_content_charset() or "utf-8"
                body = resp.read().decode(charset, errors="replace")
        except urllib.error.HTTPError as e:
            return self._failure(FailureCategory.SERVER_ERROR, f"HTTP {e.code}: {e.reason}", markdown_text)
        except urllib.error.URLError as e:
            return self._failure(FailureCategory.CONNECTIVITY, str(e.reason), markdown_text)
        except OSError as e:
            # Socket timeouts and TLS failures surface as bare OSErrors.
            return self._failure(FailureCategory.CONNECTIVITY, str(e) or type(e).__name__, markdown_text)
        except Exception as e:  # noqa: BLE001 - reported to the user as a render failure
            return self._failure(FailureCategory.UNKNOWN, f"{type(e).__name__}: {e}", markdown_text)
        return RenderSuccess(body)

    def _failure(self, category: FailureCategory, message: str, markdown_text: str) -> RenderFailure:
        logger.warning("Render request to %s failed (%s): %s", self.endpoint, category.value, message)
        return RenderFailure(category, message, markdown_text)


class LocalMarkdownRenderer:
    """Offline renderer approximating GitHub-flavored markdown."""

    def __init__(self) -> None:
        self._md = MarkdownIt(
            "commonmark",
            {"html": True, "typographer": False},
        ).enable("table").enable("strikethrough")
        self._md.use(tasklists_plugin)

    def render(self, markdown_text: str) -> RenderResult:
        try:
            return RenderSuccess(self._md.render(markdown_text))
        except Exception as e:  # noqa: BLE001 - reported to the user as a render failure
            logger.warning("Local markdown render failed: %s", e)
            return RenderFailure(FailureCategory.UNKNOWN, f"{type(e).__name__}: {e}", markdown_text)


def build_renderer(config) -> MarkdownRenderer:
    """Return the rendering backend selected by a `ViewerConfig`."""
    if config.render_backend == "local":
        return LocalMarkdownRenderer()
    return GitHubMarkdownClient(
        config.render_endpoint,
        mode=config.render_mode,
        timeout_s=config.render_timeout,
        user_agent=config.user_agent,
        token=config.github_token,
    )
