"""mdviewer: open or drop a markdown file and preview it as GitHub renders it."""

__version__ = "0.3.0"
