from ink2md.core.markdown_utils import append_at_end, find_image_embeds, insert_below_frontmatter


def test_find_image_embeds_handles_wiki_and_markdown_links() -> None:
    note = (
        "Intro\n"
        "![[page one.png|300]]\n"
        "![scan](<images/page 2.jpg> \"Second page\")\n"
        "![[notes.pdf#page=2]]\n"
        "[[not-an-embed.png]]\n"
    )
    assert find_image_embeds(note) == ["page one.png", "images/page 2.jpg", "notes.pdf"]


def test_insert_below_frontmatter_keeps_yaml_block_first() -> None:
    original = "---\ntags: [inbox]\n---\n![[page.png]]\n"
    updated = insert_below_frontmatter(original, "Buy milk\n")
    assert updated == "---\ntags: [inbox]\n---\nBuy milk\n\n![[page.png]]\n"


def test_insert_without_frontmatter_prepends() -> None:
    assert insert_below_frontmatter("![[page.png]]", "Buy milk") == "Buy milk\n\n![[page.png]]"
    assert insert_below_frontmatter("body", "   ") == "body"


def test_append_at_end_separates_with_blank_line() -> None:
    assert append_at_end("", "![[a.png]]") == "![[a.png]]\n"
    assert append_at_end("text", "![[a.png]]") == "text\n\n![[a.png]]\n"
    assert append_at_end("text\n", "![[a.png]]") == "text\n\n![[a.png]]\n"
    assert append_at_end("text\n\n", "![[a.png]]") == "text\n\n![[a.png]]\n"
