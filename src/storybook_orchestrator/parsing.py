"""Turn the agent's free text into a title and an ordered list of pages.

Pages are kept only when both their text and their image description are
present when the page closes. Partial pages are dropped without a trace, so a
malformed block from the model means a missing page rather than an error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from storybook_orchestrator.external.prompting import IMAGE_MARKER, TEXT_MARKER, TITLE_MARKER

_PAGE_HEADER = re.compile(r"^Page\s*\d+\s*:?$")


@dataclass
class ParsedPage:
    number: int
    text: str
    image: str


@dataclass
class ParsedStory:
    title: str = ""
    pages: list[ParsedPage] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.title) and bool(self.pages)


@dataclass
class _PageDraft:
    text: str = ""
    image: str = ""

    def is_complete(self) -> bool:
        return bool(self.text) and bool(self.image)


def _normalized_lines(content: str) -> list[str]:
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return [line.strip() for line in lines if line.strip()]


def _after(line: str, marker: str) -> str:
    return line[len(marker) :].strip()


def parse_story_content(content: str) -> ParsedStory:
    title = ""
    drafts: list[_PageDraft] = []
    current: _PageDraft | None = None

    def close(draft: _PageDraft | None) -> None:
        if draft is not None and draft.is_complete():
            drafts.append(draft)

    for line in _normalized_lines(content):
        if line.startswith(TITLE_MARKER):
            title = _after(line, TITLE_MARKER)
        elif _PAGE_HEADER.match(line):
            close(current)
            current = _PageDraft()
        elif line.startswith(TEXT_MARKER):
            if current is not None:
                current.text = _after(line, TEXT_MARKER)
        elif line.startswith(IMAGE_MARKER):
            if current is not None:
                current.image = _after(line, IMAGE_MARKER)
    close(current)

    return ParsedStory(
        title=title,
        pages=[
            ParsedPage(number=index, text=draft.text, image=draft.image)
            for index, draft in enumerate(drafts, start=1)
        ],
    )
