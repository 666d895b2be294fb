import os

from conftest import image_bytes, make_spec
from core.cache import (
    book_file_exists,
    fragment_path,
    list_chapter_images,
    load_existing_chapter,
    output_filename,
    read_fragment_placeholders,
    write_chapter_fragment,
)
from core.models import ChapterRef

REF = ChapterRef(4, "/manga/chapter-4", "https://comic.test/manga/chapter-4")


def _dirs(tmp_path):
    fragments = tmp_path / "html"
    images = tmp_path / "images"
    fragments.mkdir()
    images.mkdir()
    return str(fragments), str(images)


def _chapter_images(images_dir, names):
    chapter_dir = os.path.join(images_dir, "4")
    os.makedirs(chapter_dir, exist_ok=True)
    paths = []
    for name in names:
        path = os.path.join(chapter_dir, name)
        with open(path, "wb") as fh:
            fh.write(image_bytes())
        paths.append(path)
    return paths


def test_no_fragment_is_a_miss(tmp_path):
    fragments, images = _dirs(tmp_path)
    _chapter_images(images, ["1.png"])
    assert load_existing_chapter(REF, fragments, images) is None


def test_fragment_without_images_is_a_miss(tmp_path):
    fragments, images = _dirs(tmp_path)
    write_chapter_fragment("Chapter 4", 4, [], [], fragments)
    assert load_existing_chapter(REF, fragments, images) is None

    os.makedirs(os.path.join(images, "4"))
    with open(os.path.join(images, "4", "notes.txt"), "w") as fh:
        fh.write("not an image")
    assert load_existing_chapter(REF, fragments, images) is None


def test_complete_chapter_is_reused_in_numeric_order(tmp_path):
    fragments, images = _dirs(tmp_path)
    paths = _chapter_images(images, ["10.png", "2.png", "1.png"])
    write_chapter_fragment("Chapter 4", 4, paths, [], fragments)

    content = load_existing_chapter(REF, fragments, images)

    assert content is not None
    assert content.ref == REF
    assert [os.path.basename(p) for p in content.images] == ["1.png", "2.png", "10.png"]
    assert content.fragment_file == fragment_path(fragments, 4)
    assert content.failed_image_names == set()


def test_fragment_with_missing_images_is_reprocessed(tmp_path):
    fragments, images = _dirs(tmp_path)
    paths = _chapter_images(images, ["1.png", "2.png"])
    write_chapter_fragment("Chapter 4", 4, paths, ["3.png"], fragments)

    assert load_existing_chapter(REF, fragments, images) is None


def test_fragment_lists_images_and_placeholders_in_order(tmp_path):
    fragments, images = _dirs(tmp_path)
    paths = _chapter_images(images, ["1.png", "10.png"])

    path = write_chapter_fragment("Chapter <4>", 4, paths, ["2.png"], fragments)
    text = open(path, encoding="utf-8").read()

    assert os.path.basename(path) == "chapter-4.xhtml"
    assert "<h1>Chapter &lt;4&gt;</h1>" in text
    assert text.index('src="images/4/1.png"') < text.index("[Image could not be downloaded: 2.png]")
    assert text.index("[Image could not be downloaded: 2.png]") < text.index('src="images/4/10.png"')
    assert read_fragment_placeholders(path) == ["2.png"]


def test_list_chapter_images_filters_by_extension(tmp_path):
    d = tmp_path / "4"
    d.mkdir()
    for name in ["2.JPG", "1.webp", "3.gif", "readme.md", "4.jpeg"]:
        (d / name).write_bytes(b"x")
    assert [os.path.basename(p) for p in list_chapter_images(str(d))] == ["1.webp", "2.JPG", "3.gif", "4.jpeg"]
    assert list_chapter_images(str(tmp_path / "missing")) == []


def test_book_file_exists_uses_range_and_template(tmp_path):
    spec = make_spec(tmp_path, book_filename_template="${manga}: Vol ${start}-${end}")
    assert output_filename(spec, 1, 10) == "Manga_ Vol 1-10.pdf"
    assert not book_file_exists(spec, 1, 10)

    os.makedirs(spec.output_dir)
    open(os.path.join(spec.output_dir, "Manga_ Vol 1-10.pdf"), "w").close()
    assert book_file_exists(spec, 1, 10)
    assert not book_file_exists(spec, 11, 20)


def test_book_file_exists_falls_back_to_title_template(tmp_path):
    spec = make_spec(tmp_path, output_format="epub")
    assert output_filename(spec, 3, 7) == "Manga 3-7.epub"
