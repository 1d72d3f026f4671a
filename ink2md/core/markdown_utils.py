from __future__ import annotations

import re
from urllib.parse import unquote


_EMBED_PATTERN = re.compile(r"!\[\[([^\]]+)\]\]|!\[[^\]]*\]\(([^)]+)\)")
_FRONTMATTER_PATTERN = re.compile(r"^---\r?\n[\s\S]*?\r?\n---\r?\n?")
_LINK_TITLE_PATTERN = re.compile(r"^(.*?)(\s+[\"'].*[\"'])$")


def _strip_subpath(link: str) -> str:
    for marker in ("#", "^"):
        index = link.find(marker)
        if index != -1:
            link = link[:index]
    return link


def _normalize_wiki_link(raw: str) -> str:
    link = raw.strip().split("|", 1)[0]
    return _strip_subpath(link).strip()


def _normalize_markdown_link(raw: str) -> str:
    link = raw.strip()
    if link.startswith("<") and link.endswith(">"):
        link = link[1:-1]

    titled = _LINK_TITLE_PATTERN.match(link)
    if titled:
        link = titled.group(1).strip()
        if link.startswith("<") and link.endswith(">"):
            link = link[1:-1]
    return unquote(_strip_subpath(link)).strip()


def find_image_embeds(note_text: str) -> list[str]:
    """Return link paths of ``![[...]]`` and ``![alt](...)`` embeds in note order."""
    embeds: list[str] = []
    for match in _EMBED_PATTERN.finditer(note_text):
        wiki_target, md_target = match.group(1), match.group(2)
        if wiki_target:
            linkpath = _normalize_wiki_link(wiki_target)
        else:
            linkpath = _normalize_markdown_link(md_target or "")
        if linkpath:
            embeds.append(linkpath)
    return embeds


def insert_below_frontmatter(original: str, insertion: str) -> str:
    normalized = insertion.rstrip()
    if not normalized:
        return original

    match = _FRONTMATTER_PATTERN.match(original)
    if not match:
        return f"{normalized}\n\n{original}"

    frontmatter = match.group(0)
    rest = original[len(frontmatter):]
    separator = "\n" if rest.startswith("\n") else "\n\n"
    return f"{frontmatter}{normalized}{separator}{rest}"


def append_at_end(original: str, insertion: str) -> str:
    trimmed = insertion.strip()
    if not trimmed:
        return original
    if not original:
        return f"{trimmed}\n"

    if original.endswith("\n\n"):
        separator = ""
    elif original.endswith("\n"):
        separator = "\n"
    else:
        separator = "\n\n"
    return f"{original}{separator}{trimmed}\n"
