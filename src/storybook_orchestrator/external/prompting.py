"""Prompt sent to the generation service.

The line prefixes below are the contract with ``storybook_orchestrator.parsing``:
changing one without the other silently yields empty documents.
"""

from __future__ import annotations

TITLE_MARKER = "Title:"
PAGE_MARKER = "Page"
TEXT_MARKER = "Text:"
IMAGE_MARKER = "Image:"

MIN_PAGES = 6
MAX_PAGES = 10

_TEMPLATE = """Create a children's picture book story: {brief}.
Tags: {tags}.

Write a complete children's picture book story, including:
1. A story title
2. The text of every page (suitable for children aged 3-8)
3. An illustration description for every page (describe the scene, characters and colors in detail)
4. The story should be educational and carry positive values

Use exactly this format:
{title_marker} [story title]

{page_marker} 1:
{text_marker} [page text]
{image_marker} [detailed illustration description]

{page_marker} 2:
{text_marker} [page text]
{image_marker} [detailed illustration description]

...and so on, producing a complete story of {min_pages}-{max_pages} pages."""


def build_story_prompt(brief: str, tags: list[str], custom_tags: list[str] | None = None) -> str:
    all_tags = [tag for tag in [*tags, *(custom_tags or [])] if tag.strip()]
    return _TEMPLATE.format(
        brief=brief.strip(),
        tags=", ".join(all_tags) if all_tags else "none",
        title_marker=TITLE_MARKER,
        page_marker=PAGE_MARKER,
        text_marker=TEXT_MARKER,
        image_marker=IMAGE_MARKER,
        min_pages=MIN_PAGES,
        max_pages=MAX_PAGES,
    )
