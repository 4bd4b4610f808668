"""
Prompts for repository wiki generation.

The wiki is Markdown whose first paragraph is a single-sentence summary; the
rest is a longer walkthrough aimed at an engineer new to the codebase.
"""

from typing import Dict, List


WIKI_SYSTEM_PROMPT = """You are a technical documentation expert writing the wiki page
for a software repository. Write documentation that:
- Opens with ONE sentence summarizing what the repository is for
- Starts with the big picture before diving into details
- Names the main modules, entry points and how data flows between them
- Mentions the languages and notable dependencies
- Uses Markdown headings and bullet points, and stays scannable
- Only states what the provided context supports; never invent files or APIs"""


# =============================================================================
# Prompt rendering
# =============================================================================

def _format_languages(language_counts: Dict[str, int]) -> str:
    if not language_counts:
        return "(none detected)"
    ordered = sorted(language_counts.items(), key=lambda item: (-item[1], item[0]))
    return ", ".join(f"{language} ({count} chunks)" for language, count in ordered)


def _format_list(items: List[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def build_wiki_prompt(
    full_name: str,
    commit_sha: str,
    files: List[str],
    symbols: List[str],
    language_counts: Dict[str, int],
    readme_excerpt: str,
) -> str:
    """Render the user prompt for one wiki generation."""
    readme_section = readme_excerpt.strip() or "(no README found)"

    return f"""Write the wiki page for the GitHub repository {full_name} at commit {commit_sha[:12]}.

## Languages
{_format_languages(language_counts)}

## Files (first {len(files)})
{_format_list(files, "(no files)")}

## Most frequent symbols
{_format_list(symbols, "(no symbols detected)")}

## README excerpt
{readme_section}

Output format:
1. First paragraph: exactly one sentence summarizing the repository
2. ## Overview - what the project does and who it is for
3. ## Architecture - main components and how they interact
4. ## Key Modules - the most important files or packages
5. ## Getting Around - where a new contributor should start reading"""
