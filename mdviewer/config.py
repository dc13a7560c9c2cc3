"""User configuration stored in `~/.mdviewer.cfg`."""

from __future__ import annotations

import configparser
import logging
import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from mdviewer.render import DEFAULT_RENDER_MODE, DEFAULT_RENDER_TIMEOUT, DEFAULT_USER_AGENT, GITHUB_MARKDOWN_ENDPOINT

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".mdviewer.cfg"
CONFIG_SECTION = "mdviewer"
TOKEN_ENV_VARS = ("MDVIEWER_GITHUB_TOKEN", "GITHUB_TOKEN")
RENDER_BACKENDS = ("github", "local")

# Qt WebEngine on Windows links against the MSVC runtime.
WINDOWS_RUNTIME_INSTALLER_URL = "https://aka.ms/vs/17/release/vc_redist.x64.exe"


def config_file_path() -> Path:
    return Path.home() / CONFIG_FILE_NAME


def default_installer_url() -> str:
    return WINDOWS_RUNTIME_INSTALLER_URL if sys.platform == "win32" else ""


@dataclass(frozen=True)
class ViewerConfig:
    render_backend: str = "github"
    render_endpoint: str = GITHUB_MARKDOWN_ENDPOINT
    render_mode: str = DEFAULT_RENDER_MODE
    render_timeout: float = DEFAULT_RENDER_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    check_runtime: bool = True
    installer_url: str = field(default_factory=default_installer_url)
    installer_silent_args: str = "/install /quiet /norestart"
    installer_interactive_args: str = "/install"
    download_timeout: float = 30.0
    install_timeout: float = 120.0
    last_directory: Path = field(default_factory=Path.home)
    github_token: str | None = field(default=None, repr=False)


def _token_from_env() -> str | None:
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None


def _parse_value(defaults: ViewerConfig, key: str, raw: str):
    """Convert one raw INI value to the type of the matching default."""
    current = getattr(defaults, key)
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in configparser.ConfigParser.BOOLEAN_STATES:
            return configparser.ConfigParser.BOOLEAN_STATES[lowered]
        raise ValueError(f"expected a boolean, got {raw!r}")
    if isinstance(current, float):
        value = float(raw)
        if value <= 0:
            raise ValueError(f"expected a positive number, got {raw!r}")
        return value
    if isinstance(current, Path):
        candidate = Path(raw.strip()).expanduser()
        if not candidate.is_dir():
            raise ValueError(f"not a directory: {candidate}")
        return candidate
    if key == "render_backend":
        value = raw.strip().lower()
        if value not in RENDER_BACKENDS:
            raise ValueError(f"expected one of {', '.join(RENDER_BACKENDS)}, got {raw!r}")
        return value
    return raw.strip()


def load_config(path: Path | None = None) -> ViewerConfig:
    """Load configuration, falling back to defaults for anything unusable."""
    defaults = ViewerConfig(github_token=_token_from_env())
    cfg_path = path if path is not None else config_file_path()
    parser = configparser.ConfigParser(interpolation=None)
    try:
        if not cfg_path.exists():
            return defaults
        parser.read(cfg_path, encoding="utf-8")
    except (OSError, configparser.Error) as exc:
        logger.warning("Ignoring unreadable config %s: %s", cfg_path, exc)
        return defaults
    if not parser.has_section(CONFIG_SECTION):
        return defaults

    known = {f.name for f in fields(ViewerConfig)} - {"github_token"}
    overrides = {}
    for key, raw in parser.items(CONFIG_SECTION):
        if key not in known:
            logger.warning("Unknown config key %r in %s", key, cfg_path)
            continue
        try:
            overrides[key] = _parse_value(defaults, key, raw)
        except ValueError as exc:
            logger.warning("Invalid value for %r in %s (%s); using default", key, cfg_path, exc)
    return replace(defaults, **overrides)


def save_last_directory(directory: Path, path: Path | None = None) -> None:
    """Persist the last browsed directory, keeping any other settings."""
    cfg_path = path if path is not None else config_file_path()
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(cfg_path, encoding="utf-8")
    except (configparser.Error, OSError) as exc:
        # Rewriting a file we could not parse would drop the user's settings.
        logger.warning("Not saving last directory; could not read %s: %s", cfg_path, exc)
        return
    if not parser.has_section(CONFIG_SECTION):
        parser.add_section(CONFIG_SECTION)
    parser.set(CONFIG_SECTION, "last_directory", str(directory))
    try:
        with cfg_path.open("w", encoding="utf-8") as fh:
            parser.write(fh)
    except OSError as exc:
        # Persistence is best-effort and must not block application exit.
        logger.debug("Could not write %s: %s", cfg_path, exc)
