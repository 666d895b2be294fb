from __future__ import annotations

import os
import shutil
import xml.sax.saxutils
import zipfile
from datetime import datetime, timezone
from typing import List, Set

from bs4 import BeautifulSoup
from PIL import Image

from core.log import log_info, log_verbose, log_warning
from .base import MISSING_IMAGE_TEXT, UNREADABLE_IMAGE_TEXT, BaseBookBuilder

CONTAINER_XML = '''<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
    <rootfiles>
        <rootfile full-path="EPUB/content.opf" media-type="application/oebps-package+xml"/>
    </rootfiles>
</container>'''

STYLE_CSS = '''@charset "UTF-8";
body { margin: 0; padding: 0; text-align: center; }
h1 { margin: 0.6em 0; }
img { max-width: 100%; display: block; margin: 0 auto; }
p.missing-image { margin: 2em 1em; padding: 2em 1em; background: #f0f0f0; color: #a00000; }
ol { text-align: left; }
'''


def _media(path: str):
    ext = os.path.splitext(path)[1].lower()
    if ext == ".png":
        return "image/png"
    if ext == ".gif":
        return "image/gif"
    if ext == ".webp":
        return "image/webp"
    return "image/jpeg"


def _is_readable(path: str) -> bool:
    try:
        with Image.open(path) as img:
            img.verify()
        return True
    except Exception as e:
        log_warning(f"  Warning: Image can not be read {path}: {e}")
        return False


def _esc(text: str) -> str:
    return xml.sax.saxutils.escape(text)


class EpubBookBuilder(BaseBookBuilder):
    name = "epub"
    extension = ".epub"

    def _chapter_document(self, chapter_title: str, content, readable: Set[str]) -> str:
        """
        Rewrites the chapter fragment so every <img> points at an image packed
        in the book; anything else becomes a visible placeholder paragraph.
        """
        n = content.chapter_number
        with open(content.fragment_file, "r", encoding="utf-8") as fh:
            soup = BeautifulSoup(fh.read(), "html.parser")

        for img in soup.find_all("img"):
            name = os.path.basename(img.get("src", ""))
            if name in readable:
                img["src"] = f"images/{n}/{name}"
                continue
            text = (
                MISSING_IMAGE_TEXT if name in content.failed_image_names else UNREADABLE_IMAGE_TEXT
            ).format(name=name)
            placeholder = soup.new_tag("p", attrs={"class": "missing-image", "data-filename": name})
            placeholder.string = text
            img.replace_with(placeholder)

        head = soup.find("head")
        if head is not None and head.find("link") is None:
            head.append(
                soup.new_tag("link", attrs={"rel": "stylesheet", "type": "text/css", "href": "style.css"})
            )
        if soup.title is not None:
            soup.title.string = chapter_title
        return str(soup)

    def _title_document(self) -> str:
        lines = self.title_lines
        heading = "<br/>".join(_esc(line) for line in lines)
        toc = ""
        if self.chapter_titles:
            entries = "".join(
                f'<li><a href="chapter_{i}.xhtml">{_esc(t)}</a></li>'
                for i, t in enumerate(self.chapter_titles, start=1)
                if i <= len(self.chapters)
            )
            toc = f"<h2>Table of Contents</h2>\n    <ol>{entries}</ol>"
        return f'''<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" lang="{self.language}">
<head>
    <title>{_esc(lines[0])}</title>
    <link rel="stylesheet" type="text/css" href="style.css"/>
</head>
<body>
    <h1>{heading}</h1>
    {toc}
</body>
</html>'''

    def _nav_document(self) -> str:
        items = "\n            ".join(
            f'<li><a href="chapter_{i}.xhtml">{_esc(title)}</a></li>'
            for i, (title, _) in enumerate(self.chapters, start=1)
        )
        return f'''<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head>
    <title>Table of Contents</title>
    <link rel="stylesheet" type="text/css" href="style.css"/>
</head>
<body>
    <nav epub:type="toc">
        <h1>Table of Contents</h1>
        <ol>
            {items}
        </ol>
    </nav>
</body>
</html>'''

    def save_to(self, output_dir: str, filename: str) -> str:
        out_path = self.output_path(output_dir, filename)
        temp_dir = os.path.join(output_dir, f".{filename}.epub-build")
        epub_dir = os.path.join(temp_dir, "EPUB")
        os.makedirs(os.path.join(epub_dir, "images"), exist_ok=True)
        os.makedirs(os.path.join(temp_dir, "META-INF"), exist_ok=True)

        manifest_items: List[str] = [
            '<item id="css" href="style.css" media-type="text/css"/>',
            '<item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>',
        ]
        spine_items: List[str] = []

        try:
            with open(os.path.join(temp_dir, "mimetype"), "w") as f:
                f.write("application/epub+zip")
            with open(os.path.join(temp_dir, "META-INF", "container.xml"), "w") as f:
                f.write(CONTAINER_XML)
            with open(os.path.join(epub_dir, "style.css"), "w") as f:
                f.write(STYLE_CSS)

            if self.chapter_titles is not None:
                with open(os.path.join(epub_dir, "title.xhtml"), "w", encoding="utf-8") as f:
                    f.write(self._title_document())
                manifest_items.append('<item id="title" href="title.xhtml" media-type="application/xhtml+xml"/>')
                spine_items.append('<itemref idref="title"/>')

            image_counter = 0
            for idx, (chapter_title, content) in enumerate(self.chapters, start=1):
                n = content.chapter_number
                chapter_images = os.path.join(epub_dir, "images", str(n))
                os.makedirs(chapter_images, exist_ok=True)
                readable: Set[str] = set()
                for name, path in self.page_sequence(content):
                    if path is None or not _is_readable(path):
                        continue
                    shutil.copy(path, os.path.join(chapter_images, name))
                    manifest_items.append(
                        f'<item id="img_{image_counter}" href="images/{n}/{_esc(name)}" media-type="{_media(path)}"/>'
                    )
                    image_counter += 1
                    readable.add(name)

                doc_name = f"chapter_{idx}.xhtml"
                with open(os.path.join(epub_dir, doc_name), "w", encoding="utf-8") as f:
                    f.write(self._chapter_document(chapter_title, content, readable))
                manifest_items.append(
                    f'<item id="chapter_{idx}" href="{doc_name}" media-type="application/xhtml+xml"/>'
                )
                spine_items.append(f'<itemref idref="chapter_{idx}"/>')
                log_verbose(f"  Added {chapter_title} ({len(readable)} images)")

            with open(os.path.join(epub_dir, "nav.xhtml"), "w", encoding="utf-8") as f:
                f.write(self._nav_document())

            modified_timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            book_title = " ".join(self.title_lines)
            metadata_items = [
                f'<dc:identifier id="bookid">web2book-{_esc(filename)}</dc:identifier>',
                f"<dc:title>{_esc(book_title)}</dc:title>",
                f"<dc:language>{_esc(self.language)}</dc:language>",
                f'<meta property="dcterms:modified">{modified_timestamp}</meta>',
            ]
            if self.author:
                metadata_items.append(f"<dc:creator>{_esc(self.author)}</dc:creator>")

            metadata_xml = "\n        ".join(metadata_items)
            manifest_xml = "\n        ".join(manifest_items)
            spine_xml = "\n        ".join(spine_items)
            package_document = f'''<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" unique-identifier="bookid" version="3.0">
    <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:dcterms="http://purl.org/dc/terms/" xmlns:opf="http://www.idpf.org/2007/opf">
        {metadata_xml}
    </metadata>
    <manifest>
        {manifest_xml}
    </manifest>
    <spine>
        {spine_xml}
    </spine>
</package>'''
            with open(os.path.join(epub_dir, "content.opf"), "w", encoding="utf-8") as f:
                f.write(package_document)

            with zipfile.ZipFile(out_path, "w", zipfile.ZIP_DEFLATED) as zf:
                zf.write(
                    os.path.join(temp_dir, "mimetype"),
                    "mimetype",
                    compress_type=zipfile.ZIP_STORED,
                )
                for root, _, files in os.walk(temp_dir):
                    for file in sorted(files):
                        if file == "mimetype":
                            continue
                        file_path = os.path.join(root, file)
                        zf.write(file_path, os.path.relpath(file_path, temp_dir))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        log_info(f"EPUB saved → {os.path.basename(out_path)}")
        return out_path
