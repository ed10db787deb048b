"""
Paper Content Tools - Read sections, pages and search results from a paper.

Single-paper handlers receive the parsed ``PaperStructure`` as ``paper``;
cross-paper handlers receive ``papers`` keyed by item key. All return plain
text meant for the model.
"""

import math
import re

from .base import Tool, ToolParameter, ToolResult
from .parser import FULL_TEXT_SECTION, SECTION_ALIASES, PaperStructure, parse_page_range

MAX_SECTION_CHARS = 8000
MAX_PAGES_CHARS = 15000
MAX_PASSAGE_CHARS = 500
MAX_COMPARE_SECTION_CHARS = 2000
MAX_RESULTS_PER_PAPER = 10

SECTION_CHOICES = [
    "abstract",
    "introduction",
    "related_work",
    "methodology",
    "experiments",
    "results",
    "discussion",
    "conclusion",
    "references",
]

ITEM_KEY_PARAMETER = ToolParameter(
    name="item_key",
    param_type="string",
    description=(
        "Optional. Key of the paper to query. If not specified, uses the "
        "current paper."
    ),
    required=False,
)

ITEM_KEYS_PARAMETER = ToolParameter(
    name="item_keys",
    param_type="array",
    description=(
        "Optional. Keys of the papers to use. If not specified, uses all "
        "currently selected papers."
    ),
    required=False,
    items={"type": "string"},
)

# Section names looked up for each comparison aspect
COMPARE_ASPECTS = {
    "methodology": ["methodology", "methods", "approach"],
    "results": ["results", "experiments", "evaluation"],
    "conclusions": ["conclusion", "conclusions", "discussion"],
}


def _truncate_passage(text: str) -> str:
    if len(text) > MAX_PASSAGE_CHARS:
        return text[:MAX_PASSAGE_CHARS] + "..."
    return text


async def get_paper_section_handler(paper: PaperStructure, section: str, **_) -> ToolResult:
    """Return one section by (aliased) name."""
    requested = re.sub(r"\s+", "_", section.lower())
    normalized = SECTION_ALIASES.get(requested, requested)

    found = paper.find_section(normalized)
    if found is None:
        available = ", ".join(s.normalized_name for s in paper.sections)
        return ToolResult(
            success=True,
            output=f'Section "{section}" not found. Available sections: {available}',
        )

    content = found.content
    if len(content) > MAX_SECTION_CHARS:
        return ToolResult(
            success=True,
            output=(
                f"[Section: {found.name}]\n\n{content[:MAX_SECTION_CHARS]}...\n\n"
                f"[Content truncated, total length: {len(content)} characters]"
            ),
        )
    return ToolResult(success=True, output=f"[Section: {found.name}]\n\n{content}")


async def search_paper_content_handler(
    paper: PaperStructure,
    query: str,
    max_results: int = 5,
    **_,
) -> ToolResult:
    """Keyword search over paragraphs, ranked by matched words plus a phrase bonus."""
    query_lower = query.lower()
    words = query_lower.split()
    results = []

    paragraphs = [p for p in re.split(r"\n\s*\n", paper.full_text) if len(p.strip()) > 50]
    for paragraph in paragraphs:
        paragraph_lower = paragraph.lower()
        score = sum(1 for word in words if word in paragraph_lower)
        if query_lower in paragraph_lower:
            score += 3
        if score > 0:
            section = paper.section_at(paper.full_text.find(paragraph))
            results.append((score, paragraph.strip(), section.name if section else "Unknown"))

    results.sort(key=lambda r: r[0], reverse=True)
    top = results[: int(max_results)]

    if not top:
        return ToolResult(success=True, output=f'No results found for query: "{query}"')

    formatted = "\n\n---\n\n".join(
        f"[Result {i}] (Section: {section})\n{_truncate_passage(text)}"
        for i, (_, text, section) in enumerate(top, start=1)
    )
    return ToolResult(
        success=True,
        output=f'Found {len(top)} relevant passages for "{query}":\n\n{formatted}',
    )


async def get_paper_metadata_handler(paper: PaperStructure, **_) -> ToolResult:
    metadata = paper.metadata
    parts = []

    if metadata.title:
        parts.append(f"Title: {metadata.title}")
    if metadata.authors:
        parts.append(f"Authors: {', '.join(metadata.authors)}")
    if metadata.year:
        parts.append(f"Year: {metadata.year}")
    if metadata.doi:
        parts.append(f"DOI: {metadata.doi}")
    parts.append(f"Pages: {paper.page_count}")
    if metadata.abstract:
        parts.append(f"\nAbstract:\n{metadata.abstract}")
    if metadata.keywords:
        parts.append(f"\nKeywords: {', '.join(metadata.keywords)}")

    section_list = "\n".join(
        f"  - {s.name} ({len(s.content)} chars)"
        for s in paper.sections
        if s.normalized_name != FULL_TEXT_SECTION
    )
    if section_list:
        parts.append(f"\nPaper Structure:\n{section_list}")

    return ToolResult(success=True, output="\n".join(parts))


async def get_pages_handler(paper: PaperStructure, pages: str, **_) -> ToolResult:
    requested = parse_page_range(str(pages), paper.page_count)
    if not requested:
        return ToolResult(
            success=False,
            error=f'Invalid page range "{pages}". Paper has {paper.page_count} pages.',
        )

    by_number = {p.page_number: p for p in paper.pages}
    results = []
    total = 0

    for number in requested:
        page = by_number.get(number)
        if page is None:
            continue
        if total + len(page.content) > MAX_PAGES_CHARS:
            remaining = MAX_PAGES_CHARS - total
            results.append(
                f"\n[Page {number}] (truncated due to length limit)\n{page.content[:remaining]}..."
            )
            results.append(
                f"\n[Output truncated. Requested {len(requested)} pages, "
                f"showing content up to page {number}]"
            )
            break
        results.append(f"\n[Page {number}]\n{page.content}")
        total += len(page.content)

    if not results:
        return ToolResult(success=True, output=f"No content found for pages: {pages}")

    listed = ", ".join(str(n) for n in requested)
    return ToolResult(
        success=True,
        output=(
            f"Content from pages {listed} (total {paper.page_count} pages):\n"
            + "\n\n---".join(results)
        ),
    )


async def get_page_count_handler(paper: PaperStructure, **_) -> ToolResult:
    text = paper.full_text
    return ToolResult(
        success=True,
        output=(
            f"Page count: {paper.page_count}\n"
            f"Character count: {len(text)}\n"
            f"Estimated word count: {len(text.split())}"
        ),
    )


async def search_with_regex_handler(
    paper: PaperStructure,
    pattern: str,
    use_regex: bool = False,
    case_sensitive: bool = False,
    context_lines: int = 2,
    max_results: int = 10,
    **_,
) -> ToolResult:
    """Line search with surrounding context and page numbers."""
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        regex = re.compile(pattern if use_regex else re.escape(pattern), flags)
    except re.error as e:
        return ToolResult(success=False, error=f'Invalid regex pattern "{pattern}": {e}')

    lines = paper.full_text.split("\n")
    context_lines = int(context_lines)
    matches = []
    char_index = 0

    for i, line in enumerate(lines):
        if regex.search(line):
            start = max(0, i - context_lines)
            end = min(len(lines) - 1, i + context_lines)
            context = "\n".join(
                f"{'>>> ' if n == i else '    '}{n + 1}: {lines[n]}"
                for n in range(start, end + 1)
            )
            page = paper.page_at(char_index)
            matches.append(
                f"[Match {len(matches) + 1}] Line {i + 1}, Page {page.page_number if page else 1}\n{context}"
            )
            if len(matches) >= int(max_results):
                break
        char_index += len(line) + 1

    if not matches:
        return ToolResult(success=True, output=f'No matches found for pattern: "{pattern}"')

    return ToolResult(
        success=True,
        output=f'Found {len(matches)} matches for "{pattern}":\n\n' + "\n\n---\n\n".join(matches),
    )


async def get_outline_handler(paper: PaperStructure, **_) -> ToolResult:
    sections = [s for s in paper.sections if s.normalized_name != FULL_TEXT_SECTION]
    if not sections:
        return ToolResult(
            success=True,
            output="No structured outline detected. The paper may not have clear section headings.",
        )

    outline = []
    for i, section in enumerate(sections, start=1):
        page = paper.page_at(section.start_index)
        outline.append(
            f"{i}. {section.name} (Page ~{page.page_number if page else '?'}, "
            f"{len(section.content)} chars)"
        )
    return ToolResult(
        success=True,
        output=f"Document Outline ({paper.page_count} pages total):\n\n" + "\n".join(outline),
    )


async def list_sections_handler(paper: PaperStructure, **_) -> ToolResult:
    if not paper.sections:
        return ToolResult(success=True, output="No sections detected.")

    entries = []
    for i, section in enumerate(paper.sections, start=1):
        preview = section.content[:100].replace("\n", " ") + "..."
        entries.append(
            f"{i}. {section.name}\n   ID: {section.normalized_name}\n"
            f"   Length: {len(section.content)} chars\n   Preview: {preview}"
        )
    return ToolResult(
        success=True,
        output=f"Available sections ({len(paper.sections)} total):\n\n" + "\n\n".join(entries),
    )


async def get_full_text_handler(paper: PaperStructure, confirm: bool = False, **_) -> ToolResult:
    if not confirm:
        return ToolResult(
            success=False,
            error=(
                "You must set confirm=true to use this tool. This tool returns the "
                "entire paper content and consumes many tokens. Please consider using "
                "targeted tools like get_paper_section, get_pages, or "
                "search_paper_content first."
            ),
        )

    text = paper.full_text
    header = (
        f"[WARNING: Full text retrieved - approximately {math.ceil(len(text) / 4)} tokens]\n"
        f"[Paper: {paper.page_count} pages, {len(text)} characters]\n\n---\n\n"
    )
    return ToolResult(success=True, output=header + text)


async def compare_papers_handler(
    papers: dict[str, PaperStructure],
    aspect: str = "all",
    section: str | None = None,
    **_,
) -> ToolResult:
    """Put the matching sections of several papers side by side."""
    if len(papers) < 2:
        return ToolResult(
            success=False,
            error=f"Could only extract {len(papers)} paper(s). Need at least 2 for comparison.",
        )

    wanted = [
        name
        for key, names in COMPARE_ASPECTS.items()
        if aspect in (key, "all")
        for name in names
    ]
    if section:
        wanted.append(section.lower())

    lines = [f"=== Comparing {len(papers)} Papers ===", ""]
    for key, paper in papers.items():
        lines.append(f'- [{key}] "{paper.metadata.title or key}"')

    for key, paper in papers.items():
        lines.append(f"\n--- Paper [{key}]: {paper.metadata.title or key} ---\n")

        matched = []
        for name in wanted:
            for candidate in paper.sections:
                if candidate in matched:
                    continue
                if candidate.normalized_name == name or name in candidate.name.lower():
                    matched.append(candidate)
                    break

        for found in matched:
            content = found.content
            if len(content) > MAX_COMPARE_SECTION_CHARS:
                content = content[:MAX_COMPARE_SECTION_CHARS] + "... [truncated]"
            lines.extend([f"**{found.name}:**", content, ""])

        if not matched:
            if paper.metadata.abstract:
                lines.extend(["**Abstract:**", paper.metadata.abstract])
            else:
                lines.append("(No matching sections found for this paper)")

    return ToolResult(success=True, output="\n".join(lines))


async def search_across_papers_handler(
    papers: dict[str, PaperStructure],
    query: str,
    max_results_per_paper: int = 3,
    **_,
) -> ToolResult:
    """Keyword search over the paragraphs of every selected paper."""
    limit = max(1, min(int(max_results_per_paper), MAX_RESULTS_PER_PAPER))
    query_lower = query.lower()

    lines = [f'=== Search Results for "{query}" across {len(papers)} papers ===']
    for key, paper in papers.items():
        lines.append(f"\n--- Paper [{key}]: {paper.metadata.title or key} ---\n")

        matches = [
            p.strip()
            for p in re.split(r"\n\s*\n", paper.full_text)
            if query_lower in p.lower() and len(p.strip()) > 20
        ][:limit]

        if not matches:
            lines.append("No matches found in this paper.\n")
            continue

        lines.append(f"Found {len(matches)} match(es):\n")
        for i, match in enumerate(matches, start=1):
            lines.append(f"{i}. {_truncate_passage(match)}\n")

    return ToolResult(success=True, output="\n".join(lines))


def create_paper_tools() -> list[Tool]:
    """Create the paper content tools."""
    return [
        Tool(
            name="get_paper_section",
            description=(
                "Get the content of a specific section from a paper. Section detection "
                "works best for English papers with standard headings. If the section is "
                "not found, use search_paper_content with relevant keywords instead."
            ),
            parameters=[
                ITEM_KEY_PARAMETER,
                ToolParameter(
                    name="section",
                    param_type="string",
                    description="The section name to retrieve",
                    enum=SECTION_CHOICES,
                ),
            ],
            handler=get_paper_section_handler,
        ),
        Tool(
            name="search_paper_content",
            description="Search for keywords or phrases in a paper and return the best matching passages.",
            parameters=[
                ITEM_KEY_PARAMETER,
                ToolParameter(
                    name="query",
                    param_type="string",
                    description="The search query (keywords or phrase to find)",
                ),
                ToolParameter(
                    name="max_results",
                    param_type="integer",
                    description="Maximum number of matching paragraphs to return (default: 5)",
                    required=False,
                ),
            ],
            handler=search_paper_content_handler,
        ),
        Tool(
            name="get_paper_metadata",
            description="Get a paper's metadata including title, abstract, keywords and section outline.",
            parameters=[ITEM_KEY_PARAMETER],
            handler=get_paper_metadata_handler,
        ),
        Tool(
            name="get_pages",
            description="Get text content of specific pages by page range from a paper.",
            parameters=[
                ITEM_KEY_PARAMETER,
                ToolParameter(
                    name="pages",
                    param_type="string",
                    description=(
                        'Page range. Examples: "1" (single page), "1-5" (range), '
                        '"1,3,5" (multiple pages), "1-3,7,10-12" (mixed)'
                    ),
                ),
            ],
            handler=get_pages_handler,
        ),
        Tool(
            name="get_page_count",
            description="Get the total number of pages in a paper.",
            parameters=[ITEM_KEY_PARAMETER],
            handler=get_page_count_handler,
        ),
        Tool(
            name="search_with_regex",
            description="Search paper lines with plain text or a regex and return matches with context.",
            parameters=[
                ITEM_KEY_PARAMETER,
                ToolParameter(
                    name="pattern",
                    param_type="string",
                    description="Search pattern. Plain text unless use_regex is true",
                ),
                ToolParameter(
                    name="use_regex",
                    param_type="boolean",
                    description="Treat pattern as a regular expression (default: false)",
                    required=False,
                ),
                ToolParameter(
                    name="case_sensitive",
                    param_type="boolean",
                    description="Case-sensitive matching (default: false)",
                    required=False,
                ),
                ToolParameter(
                    name="context_lines",
                    param_type="integer",
                    description="Lines of context around each match (default: 2)",
                    required=False,
                ),
                ToolParameter(
                    name="max_results",
                    param_type="integer",
                    description="Maximum number of matches (default: 10)",
                    required=False,
                ),
            ],
            handler=search_with_regex_handler,
        ),
        Tool(
            name="get_outline",
            description="Get the document outline with approximate page numbers.",
            parameters=[ITEM_KEY_PARAMETER],
            handler=get_outline_handler,
        ),
        Tool(
            name="list_sections",
            description="List all detected sections with ids, lengths and previews.",
            parameters=[ITEM_KEY_PARAMETER],
            handler=list_sections_handler,
        ),
        Tool(
            name="get_full_text",
            description=(
                "[HIGH TOKEN COST] Get the entire paper content. Use only as a last "
                "resort; requires confirm=true."
            ),
            parameters=[
                ITEM_KEY_PARAMETER,
                ToolParameter(
                    name="confirm",
                    param_type="boolean",
                    description="Must be true to retrieve the full text",
                ),
            ],
            handler=get_full_text_handler,
        ),
        Tool(
            name="compare_papers",
            description=(
                "Compare specific aspects across multiple papers. Use this when you need "
                "to compare methodology, results, or conclusions between papers."
            ),
            parameters=[
                ITEM_KEYS_PARAMETER,
                ToolParameter(
                    name="aspect",
                    param_type="string",
                    description="The aspect to compare (default: all)",
                    required=False,
                    enum=[*COMPARE_ASPECTS, "all"],
                ),
                ToolParameter(
                    name="section",
                    param_type="string",
                    description="Optionally compare a specific section by name (e.g. 'introduction')",
                    required=False,
                ),
            ],
            handler=compare_papers_handler,
            requires_document=False,
            multi_document=True,
        ),
        Tool(
            name="search_across_papers",
            description=(
                "Search for keywords or phrases across all selected papers at once. "
                "Returns matching paragraphs grouped by paper."
            ),
            parameters=[
                ToolParameter(
                    name="query",
                    param_type="string",
                    description="The search query to find across papers",
                ),
                ITEM_KEYS_PARAMETER,
                ToolParameter(
                    name="max_results_per_paper",
                    param_type="integer",
                    description=f"Maximum results per paper (default: 3, max: {MAX_RESULTS_PER_PAPER})",
                    required=False,
                ),
            ],
            handler=search_across_papers_handler,
            requires_document=False,
            multi_document=True,
        ),
    ]
