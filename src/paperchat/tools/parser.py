"""
Paper structure parsing.

Turns extracted PDF text into sections, pages and a best-effort metadata
block. Section detection is heuristic and works best on English papers with
conventional headings.
"""

import math
import re
from dataclasses import dataclass, field

ESTIMATED_CHARS_PER_PAGE = 3000
FULL_TEXT_SECTION = "full_text"

SECTION_PATTERNS: dict[str, re.Pattern] = {
    "abstract": re.compile(r"^abstract\b", re.IGNORECASE),
    "introduction": re.compile(r"^(1\.?\s*)?(introduction|background)\b", re.IGNORECASE),
    "related_work": re.compile(
        r"^(2\.?\s*)?(related\s+work|literature\s+review|background)\b", re.IGNORECASE
    ),
    "methodology": re.compile(
        r"^(3\.?\s*)?(methods?|methodology|approach|materials?\s+and\s+methods?)\b", re.IGNORECASE
    ),
    "experiments": re.compile(r"^(4\.?\s*)?(experiments?|evaluation|implementation)\b", re.IGNORECASE),
    "results": re.compile(r"^(5\.?\s*)?(results?|findings?)\b", re.IGNORECASE),
    "discussion": re.compile(r"^(6\.?\s*)?(discussion|analysis)\b", re.IGNORECASE),
    "conclusion": re.compile(r"^(7\.?\s*)?(conclusions?|summary|future\s+work)\b", re.IGNORECASE),
    "references": re.compile(r"^(references|bibliography)\b", re.IGNORECASE),
    "appendix": re.compile(r"^(appendix|supplementary)\b", re.IGNORECASE),
}

# Names a model may ask for, mapped to the section ids above
SECTION_ALIASES: dict[str, str] = {
    "abstract": "abstract",
    "introduction": "introduction",
    "background": "introduction",
    "related_work": "related_work",
    "literature_review": "related_work",
    "method": "methodology",
    "methods": "methodology",
    "methodology": "methodology",
    "approach": "methodology",
    "materials_and_methods": "methodology",
    "experiment": "experiments",
    "experiments": "experiments",
    "evaluation": "experiments",
    "implementation": "experiments",
    "result": "results",
    "results": "results",
    "finding": "results",
    "findings": "results",
    "discussion": "discussion",
    "analysis": "discussion",
    "conclusion": "conclusion",
    "conclusions": "conclusion",
    "summary": "conclusion",
    "future_work": "conclusion",
    "references": "references",
    "bibliography": "references",
    "appendix": "appendix",
    "supplementary": "appendix",
}


@dataclass
class PaperSection:
    name: str
    normalized_name: str
    content: str
    start_index: int
    end_index: int


@dataclass
class PaperMetadata:
    title: str | None = None
    authors: list[str] = field(default_factory=list)
    abstract: str | None = None
    keywords: list[str] = field(default_factory=list)
    doi: str | None = None
    year: int | None = None


@dataclass
class PageInfo:
    page_number: int
    start_index: int
    end_index: int
    content: str


@dataclass
class PaperStructure:
    """Parsed view of one paper's text."""

    metadata: PaperMetadata
    sections: list[PaperSection]
    full_text: str
    pages: list[PageInfo]

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def find_section(self, normalized_name: str) -> PaperSection | None:
        for section in self.sections:
            if section.normalized_name == normalized_name:
                return section
        return None

    def section_at(self, char_index: int) -> PaperSection | None:
        for section in self.sections:
            if section.start_index <= char_index < section.end_index:
                return section
        return None

    def page_at(self, char_index: int) -> PageInfo | None:
        for page in self.pages:
            if page.start_index <= char_index < page.end_index:
                return page
        return None


def match_section_header(line: str) -> str | None:
    """Return the section id a heading line introduces, if any."""
    trimmed = line.strip()
    if len(trimmed) < 3 or len(trimmed) > 100:
        return None

    for normalized_name, pattern in SECTION_PATTERNS.items():
        if pattern.search(trimmed):
            return normalized_name
    return None


def parse_pages(text: str) -> list[PageInfo]:
    """Split text into pages.

    Form feeds mark real page breaks. Without them the text is cut into
    chunks of about ``ESTIMATED_CHARS_PER_PAGE`` characters, nudged to the
    nearest paragraph break.
    """
    page_texts = text.split("\f")

    if len(page_texts) <= 1:
        total = len(text)
        estimated = max(1, math.ceil(total / ESTIMATED_CHARS_PER_PAGE))
        page_texts = []
        for i in range(estimated):
            start = i * ESTIMATED_CHARS_PER_PAGE
            end = min((i + 1) * ESTIMATED_CHARS_PER_PAGE, total)
            if end < total:
                next_paragraph = text.find("\n\n", max(0, end - 200))
                if next_paragraph != -1 and next_paragraph < end + 200:
                    end = next_paragraph + 2
            page_texts.append(text[start:end])

    pages = []
    index = 0
    for number, content in enumerate(page_texts, start=1):
        pages.append(PageInfo(
            page_number=number,
            start_index=index,
            end_index=index + len(content),
            content=content.strip(),
        ))
        index += len(content) + 1
    return pages


def parse_page_range(range_text: str, max_page: int) -> list[int]:
    """Parse ``"1"``, ``"1-5"``, ``"1,3,5"`` or ``"1-3,7,10-12"`` into sorted page numbers."""
    pages: set[int] = set()

    for part in (p.strip() for p in range_text.split(",")):
        if not part:
            continue
        if "-" in part:
            start_text, _, end_text = part.partition("-")
            try:
                start, end = int(start_text.strip()), int(end_text.strip())
            except ValueError:
                continue
            pages.update(range(max(1, start), min(max_page, end) + 1))
        else:
            try:
                page = int(part)
            except ValueError:
                continue
            if 1 <= page <= max_page:
                pages.add(page)

    return sorted(pages)


_ABSTRACT_RE = re.compile(
    r"abstract[:\s]*\n?([\s\S]*?)(?=\n\s*(?:1\.?\s*)?(?:introduction|keywords|background)\b)",
    re.IGNORECASE,
)
_KEYWORDS_RE = re.compile(r"keywords?[:\s]*([^\n]+(?:\n(?![A-Z1-9])[^\n]+)*)", re.IGNORECASE)
_DOI_RE = re.compile(r"\b(10\.\d{4,}/\S+)\b")
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")


def extract_metadata(text: str) -> PaperMetadata:
    metadata = PaperMetadata()

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if lines and 10 < len(lines[0]) < 200:
        metadata.title = lines[0]

    if match := _ABSTRACT_RE.search(text):
        metadata.abstract = match.group(1).strip()[:2000]

    if match := _KEYWORDS_RE.search(text):
        metadata.keywords = [
            k.strip() for k in re.split(r"[,;]", match.group(1))
            if 0 < len(k.strip()) < 50
        ]

    if match := _DOI_RE.search(text):
        metadata.doi = match.group(1)

    if match := _YEAR_RE.search(text):
        metadata.year = int(match.group(0))

    return metadata


def parse_paper_structure(text: str) -> PaperStructure:
    """Parse extracted paper text into sections, pages and metadata."""
    sections: list[PaperSection] = []
    current: dict | None = None
    char_index = 0

    for line in text.split("\n"):
        trimmed = line.strip()
        section_id = match_section_header(trimmed)

        if section_id:
            if current is not None:
                sections.append(PaperSection(
                    name=current["name"],
                    normalized_name=current["id"],
                    content="\n".join(current["lines"]).strip(),
                    start_index=current["start"],
                    end_index=char_index,
                ))
            current = {"name": trimmed, "id": section_id, "start": char_index, "lines": []}
        elif current is not None:
            current["lines"].append(line)

        char_index += len(line) + 1

    if current is not None:
        sections.append(PaperSection(
            name=current["name"],
            normalized_name=current["id"],
            content="\n".join(current["lines"]).strip(),
            start_index=current["start"],
            end_index=char_index,
        ))

    if not sections:
        sections.append(PaperSection(
            name="Full Text",
            normalized_name=FULL_TEXT_SECTION,
            content=text,
            start_index=0,
            end_index=len(text),
        ))

    return PaperStructure(
        metadata=extract_metadata(text),
        sections=sections,
        full_text=text,
        pages=parse_pages(text),
    )
