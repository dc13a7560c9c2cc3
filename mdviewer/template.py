"""HTML shells wrapped around rendered markdown and render failures."""

from __future__ import annotations

import html

from mdviewer.render import FailureCategory, RenderFailure

DOCUMENT_STYLE = """
    body {
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Helvetica, Arial, sans-serif;
      padding: 1rem;
      background: white;
      color: #24292f;
    }
    .markdown-body {
      max-width: 900px;
      margin: auto;
    }
    pre {
      background: #f6f8fa;
      padding: 10px;
      overflow: auto;
      border-radius: 6px;
      border: 1px solid #e1e4e8;
    }
    code {
      background: rgba(27, 31, 35, 0.05);
      padding: 0.2em 0.4em;
      border-radius: 6px;
      font-size: 85%;
    }
    pre code {
      background: transparent;
      padding: 0;
    }
    h1, h2, h3, h4 {
      border-bottom: 1px solid #e1e4e8;
      padding-bottom: 0.3em;
    }
    blockquote {
      color: #6a737d;
      border-left: 0.25em solid #dfe2e5;
      padding: 0 1em;
    }
    table {
      border-collapse: collapse;
    }
    th, td {
      border: 1px solid #d0d7de;
      padding: 6px 13px;
    }
    img {
      max-width: 100%;
    }
    .mdviewer-fallback {
      padding: 20px;
      background: #f8d7da;
      border: 1px solid #f5c6cb;
      border-radius: 4px;
      color: #721c24;
    }
    .mdviewer-fallback pre {
      background: white;
      color: #24292f;
      border: 1px solid #ddd;
      white-space: pre-wrap;
    }
    @media print {
      body {
        background: white !important;
        color: black !important;
      }
      pre {
        background: white !important;
        border: 1px solid #ccc !important;
      }
      .mdviewer-fallback {
        background: white !important;
        color: black !important;
      }
    }
"""


def wrap_document(body: str, title: str) -> str:
    """Wrap an HTML fragment in the fixed, print-friendly document shell."""
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>{html.escape(title)}</title>
  <style>{DOCUMENT_STYLE}  </style>
</head>
<body class="markdown-body">
{body}
</body>
</html>
"""


def fallback_panel(failure: RenderFailure) -> str:
    """Inline error panel that still shows the original markdown as text."""
    lines = ['<div class="mdviewer-fallback">', "<h3>Rendering error</h3>"]
    if failure.category is FailureCategory.CONNECTIVITY:
        lines.append("<p><strong>Could not reach the rendering service.</strong></p>")
    elif failure.category is FailureCategory.SERVER_ERROR:
        lines.append("<p><strong>The rendering service rejected the request.</strong></p>")
    lines.append(f"<p>Error: {html.escape(failure.message)}</p>")
    lines.append("<p>The file is shown as plain text below.</p>")
    lines.append("<hr/>")
    lines.append(f"<pre>{html.escape(failure.source_text)}</pre>")
    lines.append("</div>")
    return "\n".join(lines)


def placeholder_html(message: str) -> str:
    """Render an empty-state page for the display surface."""
    escaped = html.escape(message)
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <style>
    html, body {{
      margin: 0;
      height: 100%;
      background: #f6f8fa;
      color: #57606a;
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Helvetica, Arial, sans-serif;
    }}
    main {{
      height: 100%;
      display: grid;
      place-items: center;
      font-size: 1rem;
    }}
  </style>
</head>
<body><main>{escaped}</main></body>
</html>
"""
