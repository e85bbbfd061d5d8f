"""
Rendering pipeline: Word source + stamps -> distributable PDF.

python-docx reads the source (body paragraphs, table text, header/footer
text); reportlab lays the result out on A4 with the header stamp at the top
of every page and the footer stamp plus the controlled-copy block at the
bottom. ``docx_to_html`` gives reviewers an uncontrolled on-screen preview.
"""
from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from markupsafe import Markup, escape

from app.dcms.errors import RenderingFailed

from .models import Document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlCopyStamp:
    user_id: int
    user_full_name: str
    copy_number: int
    date_string: str

    def lines(self) -> list[str]:
        return [
            f"CONTROLLED COPY No. {self.copy_number}",
            f"Issued to: {self.user_full_name} (user {self.user_id})  Date: {self.date_string}",
        ]


class Renderer(ABC):
    @abstractmethod
    def render(
        self,
        source: bytes,
        *,
        header_stamp: str,
        footer_stamp: str,
        control_copy_stamp: ControlCopyStamp | None = None,
    ) -> bytes: ...


def _open_docx(source: bytes):
    from docx import Document as DocxDocument

    return DocxDocument(io.BytesIO(source))


def _unique_lines(paragraphs) -> list[str]:
    out: list[str] = []
    for p in paragraphs:
        text = (p.text or "").strip()
        if text and text not in out:
            out.append(text)
    return out


def extract_header_footer(source: bytes) -> tuple[str | None, str | None]:
    """Header/footer text of every section, first occurrence wins. Unreadable files yield (None, None)."""
    try:
        doc = _open_docx(source)
    except Exception as e:
        logger.warning("Header/footer extraction failed: %s", e)
        return None, None

    headers: list[str] = []
    footers: list[str] = []
    for section in doc.sections:
        for line in _unique_lines(section.header.paragraphs):
            if line not in headers:
                headers.append(line)
        for line in _unique_lines(section.footer.paragraphs):
            if line not in footers:
                footers.append(line)
    return ("\n".join(headers) or None, "\n".join(footers) or None)


def extract_body_text(source: bytes) -> list[str]:
    doc = _open_docx(source)
    blocks = [p.text for p in doc.paragraphs]
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells]
            blocks.append(" | ".join(c for c in cells if c))
    return blocks


def _runs_html(paragraph) -> Markup:
    out = Markup("")
    for run in paragraph.runs:
        if not run.text:
            continue
        piece = escape(run.text)
        if run.bold:
            piece = Markup("<strong>%s</strong>") % piece
        if run.italic:
            piece = Markup("<em>%s</em>") % piece
        if run.underline:
            piece = Markup("<u>%s</u>") % piece
        out += piece
    return out


def _paragraph_tag(paragraph) -> str:
    style = (paragraph.style.name if paragraph.style is not None else "") or ""
    if style == "Title":
        return "h1"
    if style.startswith("Heading "):
        level = style.removeprefix("Heading ").strip()
        if level.isdigit() and 1 <= int(level) <= 6:
            return f"h{level}"
    return "p"


def docx_to_html(source: bytes) -> tuple[str, list[str]]:
    """
    Word body to an HTML fragment for on-screen review: headings, paragraphs
    with bold/italic/underline runs, and tables, in document order. Text is
    escaped. The second value lists content that could not be shown.
    """
    from docx.table import Table

    try:
        doc = _open_docx(source)
    except Exception as e:
        raise RenderingFailed("Source document could not be read", reason=str(e)) from e

    parts: list[str] = []
    messages: list[str] = []
    for block in doc.iter_inner_content():
        if isinstance(block, Table):
            rows = []
            for row in block.rows:
                cells = Markup("").join(Markup("<td>%s</td>") % c.text for c in row.cells)
                rows.append(Markup("<tr>%s</tr>") % cells)
            parts.append(Markup("<table>%s</table>") % Markup("").join(rows))
            continue
        body = _runs_html(block)
        if not body:
            if block._p.xpath(".//w:drawing|.//w:pict"):
                messages.append("An embedded image was omitted from the preview.")
            continue
        tag = _paragraph_tag(block)
        parts.append(Markup(f"<{tag}>%s</{tag}>") % body)
    return "\n".join(parts), messages


def header_stamp_for(document: Document) -> str:
    lines = [document.doc_name, f"Doc No: {document.doc_number}   Rev: {document.revision_no}"]
    if document.header_info:
        lines.append(document.header_info)
    return "\n".join(lines)


def footer_stamp_for(document: Document) -> str:
    lines = []
    if document.footer_info:
        lines.append(document.footer_info)
    issued = document.issued_at.strftime("%Y-%m-%d") if document.issued_at else "-"
    lines.append(f"Issued by: {document.issuer_name or '-'}   Issued on: {issued}")
    if document.review_due_date:
        lines.append(f"Review due: {document.review_due_date.isoformat()}")
    return "\n".join(lines)


class PdfRenderer(Renderer):
    font = "Helvetica"
    font_size = 11
    leading = 14
    margin = 40
    header_height = 80
    footer_height = 100

    def render(
        self,
        source: bytes,
        *,
        header_stamp: str,
        footer_stamp: str,
        control_copy_stamp: ControlCopyStamp | None = None,
    ) -> bytes:
        try:
            blocks = extract_body_text(source)
        except Exception as e:
            raise RenderingFailed("Source document could not be read", reason=str(e)) from e

        from reportlab.lib.pagesizes import A4
        from reportlab.lib.utils import simpleSplit
        from reportlab.pdfgen import canvas

        width, height = A4
        text_width = width - 2 * self.margin
        top = height - self.header_height - self.leading
        bottom = self.footer_height + self.leading

        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)

        def chrome() -> None:
            c.setFont(self.font + "-Bold", 10)
            y = height - 24
            for line in header_stamp.splitlines()[:4]:
                c.drawString(self.margin, y, line[:120])
                y -= 12
            c.line(self.margin, height - self.header_height + 6, width - self.margin, height - self.header_height + 6)

            c.line(self.margin, self.footer_height - 6, width - self.margin, self.footer_height - 6)
            c.setFont(self.font, 9)
            y = self.footer_height - 20
            for line in footer_stamp.splitlines()[:3]:
                c.drawString(self.margin, y, line[:130])
                y -= 11
            if control_copy_stamp is not None:
                c.setFont(self.font + "-Bold", 9)
                for line in control_copy_stamp.lines():
                    c.drawCentredString(width / 2, y, line)
                    y -= 11
            c.setFont(self.font, self.font_size)

        chrome()
        y = top
        for block in blocks:
            lines = simpleSplit(block, self.font, self.font_size, text_width) or [""]
            for line in lines:
                if y < bottom:
                    c.showPage()
                    chrome()
                    y = top
                c.drawString(self.margin, y, line)
                y -= self.leading
            y -= self.leading / 2
        c.showPage()
        c.save()
        return buf.getvalue()


def renderer_from_config(config: dict) -> Renderer:
    backend = (config.get("RENDER_BACKEND") or "pdf").strip().lower()
    if backend != "pdf":
        raise RuntimeError(f"Unsupported RENDER_BACKEND: {backend!r}")
    return PdfRenderer()
