from __future__ import annotations

import re
from io import BytesIO
from pathlib import Path

import pypdfium2 as pdfium

from ink2md.core.constants import IMAGE_MIME_BY_EXT, PDF_SUFFIXES
from ink2md.core.errors import ImageSourceError


_REMOTE_LINK = re.compile(r"^(https?://|data:|app:|obsidian:)", re.IGNORECASE)


def is_remote_link(link: str) -> bool:
    return bool(_REMOTE_LINK.match(link.strip()))


def is_image(path: Path) -> bool:
    return path.is_file() and path.suffix.lower().lstrip(".") in IMAGE_MIME_BY_EXT


def is_pdf(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in PDF_SUFFIXES


def mime_type_for(path: Path) -> str:
    extension = path.suffix.lower().lstrip(".")
    mime = IMAGE_MIME_BY_EXT.get(extension)
    if not mime:
        raise ImageSourceError(f"Unsupported image format: .{extension}")
    return mime


def resolve_embed_path(note_path: Path, linkpath: str) -> Path:
    """Resolve an embed link beside the note, falling back to a search below its folder."""
    if is_remote_link(linkpath):
        raise ImageSourceError("Embedded image must be a local file.")

    raw = Path(linkpath).expanduser()
    if raw.is_absolute():
        return raw

    beside_note = (note_path.parent / raw).resolve()
    if beside_note.exists():
        return beside_note

    # Wiki-style embeds name a file anywhere below the note's folder.
    matches = sorted(note_path.parent.rglob(raw.name))
    if matches:
        return matches[0].resolve()
    return beside_note


def load_image(path: Path) -> bytes:
    if not path.exists() or not path.is_file():
        raise ImageSourceError(f"Image not found: {path}")
    mime_type_for(path)
    data = path.read_bytes()
    if not data:
        raise ImageSourceError(f"Image is empty: {path}")
    return data


def iter_rendered_pages(pdf_path: Path, dpi: int = 180):
    document = pdfium.PdfDocument(str(pdf_path))
    try:
        for index in range(len(document)):
            page = document[index]
            pil_image = page.render(scale=dpi / 72.0).to_pil()
            buffer = BytesIO()
            pil_image.save(buffer, format="PNG")
            yield index + 1, buffer.getvalue()
    finally:
        document.close()


def load_pages(path: Path, dpi: int = 180) -> list[bytes]:
    """Load one page image, or every page of a PDF rendered to PNG."""
    if path.suffix.lower() in PDF_SUFFIXES:
        if not path.is_file():
            raise ImageSourceError(f"PDF not found: {path}")
        return [png for _number, png in iter_rendered_pages(path, dpi=dpi)]
    return [load_image(path)]


def expand_image_inputs(source: Path) -> list[Path]:
    if source.is_file() and (is_image(source) or is_pdf(source)):
        return [source]
    if source.is_dir():
        return sorted(path for path in source.rglob("*") if is_image(path) or is_pdf(path))
    return []
