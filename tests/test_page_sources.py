from pathlib import Path

import pytest
from PIL import Image

from ink2md.core.errors import ImageSourceError
from ink2md.core.page_sources import (
    expand_image_inputs,
    is_remote_link,
    load_image,
    load_pages,
    mime_type_for,
    resolve_embed_path,
)


def _write_png(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (40, 20), "white").save(path, format="PNG")
    return path


def _write_pdf(path: Path, pages: int) -> Path:
    images = [Image.new("RGB", (200, 100), "white") for _ in range(pages)]
    images[0].save(path, format="PDF", save_all=True, append_images=images[1:])
    return path


def test_is_remote_link() -> None:
    assert is_remote_link("https://example.com/a.png")
    assert is_remote_link("data:image/png;base64,AAAA")
    assert is_remote_link(" obsidian://open?file=a")
    assert not is_remote_link("attachments/page.png")


def test_resolve_embed_path_prefers_file_beside_note(tmp_path: Path) -> None:
    note = tmp_path / "note.md"
    image = _write_png(tmp_path / "page.png")
    _write_png(tmp_path / "nested" / "page.png")

    assert resolve_embed_path(note, "page.png") == image.resolve()


def test_resolve_embed_path_searches_below_note_folder(tmp_path: Path) -> None:
    note = tmp_path / "note.md"
    image = _write_png(tmp_path / "attachments" / "scan.png")

    assert resolve_embed_path(note, "scan.png") == image.resolve()
    assert resolve_embed_path(note, "missing.png") == (tmp_path / "missing.png").resolve()


def test_resolve_embed_path_rejects_remote_links(tmp_path: Path) -> None:
    with pytest.raises(ImageSourceError, match="local file"):
        resolve_embed_path(tmp_path / "note.md", "https://example.com/page.png")


def test_load_image_errors(tmp_path: Path) -> None:
    with pytest.raises(ImageSourceError, match="not found"):
        load_image(tmp_path / "missing.png")

    unsupported = tmp_path / "page.svg"
    unsupported.write_text("<svg/>", encoding="utf-8")
    with pytest.raises(ImageSourceError, match="Unsupported image format"):
        load_image(unsupported)

    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    with pytest.raises(ImageSourceError, match="empty"):
        load_image(empty)


def test_mime_type_for_known_extensions() -> None:
    assert mime_type_for(Path("a.JPG")) == "image/jpeg"
    assert mime_type_for(Path("a.tif")) == "image/tiff"


def test_load_pages_renders_every_pdf_page(tmp_path: Path) -> None:
    pdf = _write_pdf(tmp_path / "scan.pdf", pages=2)

    pages = load_pages(pdf, dpi=72)
    assert len(pages) == 2
    assert all(page.startswith(b"\x89PNG") for page in pages)


def test_load_pages_reads_single_image(tmp_path: Path) -> None:
    image = _write_png(tmp_path / "page.png")
    assert load_pages(image) == [image.read_bytes()]


def test_expand_image_inputs_walks_folders(tmp_path: Path) -> None:
    first = _write_png(tmp_path / "a.png")
    nested = _write_png(tmp_path / "sub" / "b.png")
    pdf = _write_pdf(tmp_path / "c.pdf", pages=1)
    (tmp_path / "notes.txt").write_text("skip", encoding="utf-8")

    assert expand_image_inputs(tmp_path) == sorted([first, nested, pdf])
    assert expand_image_inputs(first) == [first]
    assert expand_image_inputs(tmp_path / "notes.txt") == []
