"""
System prompt describing the open paper and the available tools.
"""

from .parser import FULL_TEXT_SECTION, PaperStructure

BASE_PROMPT = "You are a helpful research assistant analyzing academic papers.\n\n"

NO_PAPER_PROMPT = """=== NO PAPER SELECTED ===
No paper is currently selected, so paper content tools are unavailable.
Answer from the conversation so far, and ask the user to select a paper if
the question needs its content.
"""

TOOLS_PROMPT = """=== PDF CONTENT TOOLS ===
- get_paper_section: Get content of a specific section
- search_paper_content: Search for keywords/phrases
- get_paper_metadata: Get paper metadata from PDF content
- get_pages: Get content by page range (e.g., "1-5,10")
- get_page_count: Get total page count and statistics
- search_with_regex: Advanced search with regex and context
- get_outline: Get document outline/TOC
- list_sections: List all available sections
- get_full_text: [HIGH TOKEN COST] Get entire paper content - use only as last resort

=== IMPORTANT NOTES ===
1. Paper tools accept an optional "item_key" parameter to query a specific paper.
2. If item_key is not specified, tools operate on the CURRENT paper.
3. Always prefer targeted tools over get_full_text to minimize token usage.
4. Do not make up information - use the tools to verify.
"""


def generate_paper_context_prompt(
    paper: PaperStructure | None = None,
    item_key: str | None = None,
    title: str | None = None,
    has_current_item: bool = True,
    selected_titles: dict[str, str] | None = None,
) -> str:
    """Build the system prompt that seeds a tool-calling conversation.

    ``selected_titles`` maps item keys to titles when several papers are
    selected at once.
    """
    prompt = BASE_PROMPT

    if not has_current_item:
        return prompt + NO_PAPER_PROMPT

    if selected_titles and len(selected_titles) > 1:
        prompt += f"=== MULTIPLE PAPERS SELECTED ({len(selected_titles)}) ===\n"
        for key, paper_title in selected_titles.items():
            prompt += f'- [{key}] "{paper_title}"\n'
        prompt += "\nPass item_key to the tools to query a specific paper.\n"
        prompt += "Use compare_papers and search_across_papers to work across the selected papers.\n\n"

    if paper is not None:
        heading = "PRIMARY PAPER" if selected_titles and len(selected_titles) > 1 else "CURRENT PAPER"
        prompt += f"=== {heading} ===\n"
        prompt += f'Title: "{title or paper.metadata.title or "Current Paper"}"\n'
        prompt += f'item_key: "{item_key or "unknown"}"\n'
        prompt += f"Pages: {paper.page_count}\n"

        if paper.metadata.abstract:
            prompt += f"\nAbstract:\n{paper.metadata.abstract}\n"

        sections = ", ".join(
            s.normalized_name for s in paper.sections if s.normalized_name != FULL_TEXT_SECTION
        )
        if sections:
            prompt += f"\nAvailable sections: {sections}\n"
        prompt += "\n"

    return prompt + TOOLS_PROMPT
