import os
import zipfile

import pytest
from pypdf import PdfReader

from builders import EpubBookBuilder, PdfBookBuilder, create_builder, get_builder_by_name
from conftest import image_bytes
from core.cache import write_chapter_fragment
from core.models import ChapterContent, ChapterRef


def make_chapter(tmp_path, number, names, failed=()):
    chapter_dir = tmp_path / "tmp" / "images" / str(number)
    chapter_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = chapter_dir / name
        if name.startswith("broken"):
            path.write_bytes(b"not an image")
        else:
            path.write_bytes(image_bytes("PNG", size=(60, 90)))
        paths.append(str(path))
    fragment = write_chapter_fragment(
        f"Chapter {number}", number, paths, list(failed), str(tmp_path / "tmp" / "html")
    )
    ref = ChapterRef(number, f"/c/{number}", f"https://comic.test/c/{number}")
    return ChapterContent(ref=ref, images=paths, fragment_file=fragment, failed_image_names=set(failed))


def test_registry():
    assert get_builder_by_name("PDF") is PdfBookBuilder
    assert get_builder_by_name("epub") is EpubBookBuilder
    assert get_builder_by_name("mobi") is None
    with pytest.raises(ValueError):
        create_builder("mobi", "Title")


def test_pdf_book(tmp_path):
    builder = create_builder("pdf", "Manga\nChapters 1 to 2", author="Someone")
    first = make_chapter(tmp_path, 1, ["1.png", "2.png"])
    second = make_chapter(tmp_path, 2, ["1.png", "broken_3.png"], failed=["2.png"])
    builder.add_title_page(["Chapter 1", "Chapter 2"])
    builder.add_chapter(first, "Chapter 1")
    builder.add_chapter(second, "Chapter 2")

    path = builder.save_to(str(tmp_path / "out"), "Manga 1-2 - INCOMPLETE")

    assert path == str(tmp_path / "out" / "Manga 1-2 - INCOMPLETE.pdf")
    reader = PdfReader(path)
    # title page, two pages for chapter 1, three for chapter 2 (image, missing, unreadable)
    assert len(reader.pages) == 6
    assert [item.title for item in reader.outline] == ["Chapter 1", "Chapter 2"]
    assert reader.get_destination_page_number(reader.outline[1]) == 3
    assert reader.metadata.title == "Manga Chapters 1 to 2"
    assert reader.metadata.author == "Someone"
    assert os.listdir(tmp_path / "out") == ["Manga 1-2 - INCOMPLETE.pdf"]


def test_epub_book(tmp_path):
    builder = create_builder("epub", "Manga\nChapters 1 to 2", author="Someone", language="en")
    first = make_chapter(tmp_path, 1, ["1.png", "10.png", "2.png"])
    second = make_chapter(tmp_path, 2, ["1.png", "broken_3.png"], failed=["2.png"])
    builder.add_title_page(["Chapter 1", "Chapter 2"])
    builder.add_chapter(first, "Chapter 1")
    builder.add_chapter(second, "Chapter 2")

    path = builder.save_to(str(tmp_path / "out"), "Manga 1-2")

    with zipfile.ZipFile(path) as zf:
        names = zf.namelist()
        assert names[0] == "mimetype"
        assert zf.getinfo("mimetype").compress_type == zipfile.ZIP_STORED
        assert "EPUB/images/1/10.png" in names
        assert "EPUB/images/2/broken_3.png" not in names
        opf = zf.read("EPUB/content.opf").decode("utf-8")
        nav = zf.read("EPUB/nav.xhtml").decode("utf-8")
        title_page = zf.read("EPUB/title.xhtml").decode("utf-8")
        chapter_one = zf.read("EPUB/chapter_1.xhtml").decode("utf-8")
        chapter_two = zf.read("EPUB/chapter_2.xhtml").decode("utf-8")

    assert "<dc:creator>Someone</dc:creator>" in opf
    assert "<dc:title>Manga Chapters 1 to 2</dc:title>" in opf
    assert 'href="chapter_2.xhtml"' in nav and "Chapter 2" in nav
    assert "Manga<br/>Chapters 1 to 2" in title_page
    assert chapter_one.index("images/1/1.png") < chapter_one.index("images/1/2.png") < chapter_one.index(
        "images/1/10.png"
    )
    assert "[Image could not be downloaded: 2.png]" in chapter_two
    assert "[Image can not be read: broken_3.png]" in chapter_two
    assert os.listdir(tmp_path / "out") == ["Manga 1-2.epub"]
