"""Markdown rendering for question text, options and explanations.

Exam files are plain markdown, so question content is rendered to HTML
fragments on the server and clients only have to insert them. Raw HTML in
exam files is escaped.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from markdown_it import MarkdownIt


@dataclass(slots=True)
class MarkdownRenderer:
    """Converts markdown into block or inline HTML fragments."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )

    def render_fragment(self, markdown_text: str | None) -> str:
        """Render a markdown string into a block-level HTML fragment."""

        sanitized = (markdown_text or "").strip()
        if not sanitized:
            return "<p><em>No content provided.</em></p>"
        return self._markdown.render(sanitized)

    def render_inline(self, markdown_text: str | None) -> str:
        """Render a single line (an option label) without the surrounding paragraph."""

        sanitized = (markdown_text or "").strip()
        if not sanitized:
            return ""
        return self._markdown.renderInline(sanitized)


renderer = MarkdownRenderer()
