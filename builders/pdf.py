from __future__ import annotations

import os
import shutil
from typing import List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont
from pypdf import PdfWriter

from core.log import log_debug, log_info, log_verbose, log_warning
from .base import MISSING_IMAGE_TEXT, UNREADABLE_IMAGE_TEXT, BaseBookBuilder

PAGE_WIDTH = 1240  # A4 at 150 dpi
PAGE_HEIGHT = 1754
RESOLUTION = 150.0
MARGIN = 100

TITLE_FONT_SIZE = 75  # 36pt
SUBTITLE_FONT_SIZE = 58  # 28pt
HEADING_FONT_SIZE = 50
TEXT_FONT_SIZE = 32
PLACEHOLDER_HEIGHT = 400


# -----------------------------------------------------------
# font helpers
# -----------------------------------------------------------
def _load_font(size: int) -> ImageFont.ImageFont:
    candidates = [
        ("DejaVuSans.ttf", size),
        ("Arial.ttf", size),
        ("Helvetica.ttf", size),
    ]
    for font_name, font_size in candidates:
        try:
            return ImageFont.truetype(font_name, font_size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _font_line_height(font: ImageFont.ImageFont) -> int:
    bbox = font.getbbox("Hy")
    return bbox[3] - bbox[1]


def _measure_text(font: ImageFont.ImageFont, text: str) -> float:
    return font.getlength(text)


def _split_long_word(word: str, font: ImageFont.ImageFont, max_width: int) -> List[str]:
    segments: List[str] = []
    buffer = ""
    for ch in word:
        trial = buffer + ch
        if not buffer or _measure_text(font, trial) <= max_width:
            buffer = trial
        else:
            segments.append(buffer)
            buffer = ch
    if buffer:
        segments.append(buffer)
    return segments if segments else [word]


def _wrap_text_line(text: str, font: ImageFont.ImageFont, max_width: int) -> List[str]:
    words = text.split()
    if not words:
        return []

    lines: List[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}".strip()
        if _measure_text(font, candidate) <= max_width:
            current = candidate
            continue
        if current:
            lines.append(current)
            current = ""
        for segment in _split_long_word(word, font, max_width):
            if _measure_text(font, segment) <= max_width and not current:
                current = segment
            else:
                lines.append(segment)
                current = ""
    if current:
        lines.append(current)
    return lines


# -----------------------------------------------------------
# page rendering
# -----------------------------------------------------------
def render_text_pages(
    blocks: List[Tuple[str, int, bool]],
    width: int = PAGE_WIDTH,
    height: int = PAGE_HEIGHT,
) -> List[Image.Image]:
    """
    Lays out (text, font_size, centered) blocks top to bottom, starting a new
    page whenever the next line does not fit.
    """
    max_text_width = width - MARGIN * 2
    pages: List[Image.Image] = []

    def new_canvas():
        img = Image.new("RGB", (width, height), color="white")
        return img, ImageDraw.Draw(img)

    image, draw = new_canvas()
    y = MARGIN
    has_content = False

    for text, size, centered in blocks:
        font = _load_font(size)
        line_height = _font_line_height(font)
        line_gap = max(8, int(line_height * 0.35))
        for line in _wrap_text_line(text, font, max_text_width) or [""]:
            if y + line_height > height - MARGIN and has_content:
                pages.append(image)
                image, draw = new_canvas()
                y = MARGIN
            x = MARGIN
            if centered:
                x = int((width - _measure_text(font, line)) / 2)
            draw.text((x, y), line, font=font, fill="black")
            y += line_height + line_gap
            has_content = True
        y += line_gap

    if has_content:
        pages.append(image)
    return pages


def _placeholder_page(message: str) -> Image.Image:
    page = Image.new("RGB", (PAGE_WIDTH, PLACEHOLDER_HEIGHT), color=(240, 240, 240))
    draw = ImageDraw.Draw(page)
    font = _load_font(TEXT_FONT_SIZE)
    y = MARGIN
    for line in _wrap_text_line(message, font, PAGE_WIDTH - MARGIN * 2):
        draw.text((MARGIN, y), line, font=font, fill=(160, 0, 0))
        y += _font_line_height(font) + 8
    return page


def _image_page(path: str, header: Optional[str]) -> Image.Image:
    """Scales the image to the page width, with an optional title band on top."""
    with Image.open(path) as img:
        img = img.convert("RGB")
        scale = PAGE_WIDTH / img.width
        img = img.resize((PAGE_WIDTH, max(1, int(img.height * scale))), Image.LANCZOS)

    if not header:
        return img
    font = _load_font(HEADING_FONT_SIZE)
    lines = _wrap_text_line(header, font, PAGE_WIDTH - MARGIN * 2)
    line_height = _font_line_height(font) + 12
    band = MARGIN // 2 + line_height * len(lines) + MARGIN // 2
    page = Image.new("RGB", (PAGE_WIDTH, band + img.height), color="white")
    draw = ImageDraw.Draw(page)
    y = MARGIN // 2
    for line in lines:
        draw.text((int((PAGE_WIDTH - _measure_text(font, line)) / 2), y), line, font=font, fill="black")
        y += line_height
    page.paste(img, (0, band))
    return page


def merge_pdf_files(input_paths, out_path, metadata, outline=None):
    """Concatenates PDF parts, adding one outline entry per (title, first page)."""
    writer = PdfWriter()
    for p in input_paths:
        writer.append(p)
    for title, page_number in outline or []:
        writer.add_outline_item(title, page_number)
    if metadata:
        writer.add_metadata(metadata)
    with open(out_path, "wb") as f:
        writer.write(f)
    writer.close()


def rm_tree(path):
    log_verbose(f"  Cleaning up temporary directory: {path}")
    shutil.rmtree(path, ignore_errors=True)


class PdfBookBuilder(BaseBookBuilder):
    name = "pdf"
    extension = ".pdf"

    def _title_page_blocks(self) -> List[Tuple[str, int, bool]]:
        lines = self.title_lines
        blocks = [(lines[0], TITLE_FONT_SIZE, True)]
        blocks += [(line, SUBTITLE_FONT_SIZE, True) for line in lines[1:]]
        if self.chapter_titles:
            blocks.append(("", TEXT_FONT_SIZE, False))
            blocks.append(("Table of Contents", HEADING_FONT_SIZE, False))
            for i, chapter_title in enumerate(self.chapter_titles, start=1):
                blocks.append((f"{i}. {chapter_title}", TEXT_FONT_SIZE, False))
        return blocks

    def _chapter_sheets(self, chapter_title: str, content) -> List[Image.Image]:
        sheets: List[Image.Image] = []
        for name, path in self.page_sequence(content):
            header = chapter_title if not sheets else None
            if path is None:
                page = _placeholder_page(MISSING_IMAGE_TEXT.format(name=name))
            else:
                try:
                    page = _image_page(path, header)
                    sheets.append(page)
                    continue
                except Exception as e:
                    log_warning(f"  Warning: Skipping unreadable image {path}: {e}")
                    page = _placeholder_page(UNREADABLE_IMAGE_TEXT.format(name=name))
            if header:
                sheets.extend(render_text_pages([(chapter_title, HEADING_FONT_SIZE, True)]))
            sheets.append(page)
        if not sheets:
            sheets = render_text_pages([(chapter_title, HEADING_FONT_SIZE, True)])
        return sheets

    @staticmethod
    def _save_sheets(sheets: List[Image.Image], path: str) -> int:
        sheets[0].save(path, "PDF", save_all=True, append_images=sheets[1:], resolution=RESOLUTION)
        return len(sheets)

    def save_to(self, output_dir: str, filename: str) -> str:
        out_path = self.output_path(output_dir, filename)
        parts_dir = os.path.join(output_dir, f".{filename}.parts")
        os.makedirs(parts_dir, exist_ok=True)

        parts: List[str] = []
        outline: List[Tuple[str, int]] = []
        page_count = 0
        try:
            if self.chapter_titles is not None:
                part = os.path.join(parts_dir, "000_title.pdf")
                page_count += self._save_sheets(render_text_pages(self._title_page_blocks()), part)
                parts.append(part)

            for idx, (chapter_title, content) in enumerate(self.chapters, start=1):
                sheets = self._chapter_sheets(chapter_title, content)
                part = os.path.join(parts_dir, f"{idx:03d}_chapter_{content.chapter_number}.pdf")
                outline.append((chapter_title, page_count))
                page_count += self._save_sheets(sheets, part)
                parts.append(part)
                log_debug(f"  Rendered {len(sheets)} pages for {chapter_title}")

            metadata = {"/Title": " ".join(self.title_lines)}
            if self.author:
                metadata["/Author"] = self.author
            merge_pdf_files(parts, out_path, metadata, outline)
        finally:
            rm_tree(parts_dir)

        log_info(f"PDF saved → {os.path.basename(out_path)} ({page_count} pages)")
        return out_path
