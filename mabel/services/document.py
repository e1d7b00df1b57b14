# mabel/services/document.py
"""PDF rendering for single chapters and the compiled book (PyMuPDF)."""
from __future__ import annotations

import io
import re
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF
from PIL import Image

PAGE_WIDTH, PAGE_HEIGHT = 612, 792   # US Letter, points
MARGIN = 72
BODY_FONT = "tiro"                   # Times-Roman (base-14)
HEADING_FONT = "tibo"                # Times-Bold
CAPTION_FONT = "tiit"                # Times-Italic

_PUNCT = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'", "—": "-", "–": "-", "…": "..."})


@dataclass
class ChapterSection:
    module_number: int
    title: str
    content: str
    image_png: Optional[bytes] = None


def safe_filename(title: str, suffix: str = ".pdf") -> str:
    stem = re.sub(r"[^\w\- ]+", "", title or "").strip().replace(" ", "_") or "chapter"
    return f"{stem[:80]}{suffix}"


class _Layout:
    def __init__(self, doc: fitz.Document):
        self.doc = doc
        self.page: Optional[fitz.Page] = None
        self.y = MARGIN
        self.width = PAGE_WIDTH - 2 * MARGIN

    def new_page(self) -> None:
        self.page = self.doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        self.y = MARGIN

    def ensure(self, height: float) -> None:
        if self.page is None or self.y + height > PAGE_HEIGHT - MARGIN:
            self.new_page()

    def _wrap(self, text: str, font: str, size: float) -> List[str]:
        lines, line = [], ""
        for word in text.split():
            candidate = f"{line} {word}" if line else word
            if fitz.get_text_length(candidate, fontname=font, fontsize=size) <= self.width:
                line = candidate
                continue
            if line:
                lines.append(line)
            # a single token wider than the column is hard-split
            while fitz.get_text_length(word, fontname=font, fontsize=size) > self.width:
                cut = max(1, int(len(word) * self.width / fitz.get_text_length(word, fontname=font, fontsize=size)))
                lines.append(word[:cut])
                word = word[cut:]
            line = word
        if line:
            lines.append(line)
        return lines

    def text(self, text: str, *, font: str = BODY_FONT, size: float = 11.5,
             leading: float = 1.5, center: bool = False, after: float = 10) -> None:
        line_h = size * leading
        for line in self._wrap(text.translate(_PUNCT), font, size):
            self.ensure(line_h)
            x = MARGIN
            if center:
                x = (PAGE_WIDTH - fitz.get_text_length(line, fontname=font, fontsize=size)) / 2
            self.page.insert_text((x, self.y + size), line, fontname=font, fontsize=size)
            self.y += line_h
        self.y += after

    def body(self, content: str) -> None:
        for para in re.split(r"\n\s*\n", content or ""):
            para = " ".join(para.split())
            if para:
                self.text(para)

    def image(self, png: bytes, max_height: float = 320) -> None:
        with Image.open(io.BytesIO(png)) as img:
            w, h = img.size
        scale = min(self.width / w, max_height / h)
        dw, dh = w * scale, h * scale
        self.ensure(dh + 18)
        x0 = (PAGE_WIDTH - dw) / 2
        self.page.insert_image(fitz.Rect(x0, self.y, x0 + dw, self.y + dh), stream=png)
        self.y += dh + 18


def _number_pages(doc: fitz.Document, skip_first: bool = True) -> None:
    for idx, page in enumerate(doc):
        if skip_first and idx == 0:
            continue
        label = str(idx + (0 if skip_first else 1))
        w = fitz.get_text_length(label, fontname=BODY_FONT, fontsize=9)
        page.insert_text(((PAGE_WIDTH - w) / 2, PAGE_HEIGHT - MARGIN / 2), label, fontname=BODY_FONT, fontsize=9)


def _title_page(layout: _Layout, title: str, subtitle: Optional[str]) -> None:
    layout.new_page()
    layout.y = PAGE_HEIGHT / 3
    layout.text(title, font=HEADING_FONT, size=28, leading=1.3, center=True, after=18)
    if subtitle:
        layout.text(subtitle, font=CAPTION_FONT, size=14, center=True)


def _to_bytes(doc: fitz.Document) -> bytes:
    buffer = io.BytesIO()
    doc.save(buffer, garbage=3, deflate=True)
    doc.close()
    return buffer.getvalue()


def _section(layout: _Layout, section: ChapterSection) -> None:
    layout.new_page()
    layout.text(f"Chapter {section.module_number}", font=CAPTION_FONT, size=12, center=True, after=4)
    layout.text(section.title, font=HEADING_FONT, size=20, leading=1.3, center=True, after=20)
    if section.image_png:
        layout.image(section.image_png)
    layout.body(section.content)


def render_chapter_pdf(section: ChapterSection, *, book_title: str, interviewee_name: Optional[str] = None) -> bytes:
    doc = fitz.open()
    doc.set_metadata({"title": f"{book_title} - {section.title}", "author": interviewee_name or "", "creator": "Mabel"})
    layout = _Layout(doc)
    _title_page(layout, book_title, f"The story of {interviewee_name}" if interviewee_name else None)
    _section(layout, section)
    _number_pages(doc)
    return _to_bytes(doc)


def render_book_pdf(sections: List[ChapterSection], *, title: str, interviewee_name: Optional[str] = None) -> bytes:
    doc = fitz.open()
    doc.set_metadata({"title": title, "author": interviewee_name or "", "creator": "Mabel"})
    layout = _Layout(doc)
    _title_page(layout, title, f"The story of {interviewee_name}" if interviewee_name else None)

    layout.new_page()
    layout.text("Contents", font=HEADING_FONT, size=18, center=True, after=16)
    for s in sections:
        layout.text(f"Chapter {s.module_number}. {s.title}", size=12, after=2)

    for s in sections:
        _section(layout, s)
    _number_pages(doc)
    return _to_bytes(doc)
