"""Turn prompts, sentinel markers and prompt-history bookkeeping."""

from __future__ import annotations

from collections.abc import Iterable

END_OF_BOOK_MARKER = "<end_of_book>"
NEXT_PROMPT = "Next"
REASONING_LEAKAGE_MARKER = "<ctrl94>"
PROMPT_HISTORY_LIMIT = 20

DEFAULT_PROMPT = """# Book Deep-Dive Exploration Prompt
**Your Mission:** You are tasked with creating an immersive, in-depth exploration of a book I provide. Your goal is to channel the author's voice and produce a series of thematic deep-dives that, when combined, will read as a single, flowing document—like an extended meditation on the book written by the author themselves.

## For the First Response Only
**Structure your first response in two parts:**

### Part 1: Opening the Journey
- **Book Introduction**: In the author's voice, introduce the book's core premise and why it was written.
- **The Architecture**: Present a roadmap of all major themes/sections that will be covered across our multi-turn exploration, showing how each builds upon the last.
- **Reading Guide**: Briefly explain how these sections work together to form the complete journey.

### Part 2: First Thematic Section
- Proceed with the first major theme following the standard section structure below.

## For All Thematic Sections
**Creating Each Section:** Begin each section with a **thematic title** that captures the essence of what you're exploring.

## Our Process
- I'll provide the book source.
- You'll create the first response with both the opening journey overview and the first thematic section.
- When I respond with "Next", identify the next logical theme and create another complete section.
- Each new section should begin in a way that flows naturally from the previous section.
- When you've covered all major themes and the book's journey is complete, respond only with: <end_of_book>

## Key Principles
- **The reader should feel they've read the book itself through your responses.**
- Privilege completeness and depth over conciseness.
- Think of the final combined document as the book's essence, distilled but not diluted.

## Remember
You're not summarizing or studying the book—you're presenting it in its full richness through the author's own eyes. The reader should finish feeling like they've genuinely experienced the book's complete content, receiving all its wisdom, stories, and insights directly from the source material itself.
"""  # noqa: E501


def seed_turn_trace(prompt: str) -> str:
    """Trace rendering of the first user turn."""

    return f"[DISTILLATION PROMPT]\n{prompt}"


def remember_prompt(
    history: Iterable[str],
    prompt: str,
    *,
    limit: int = PROMPT_HISTORY_LIMIT,
) -> list[str]:
    """Return ``history`` with ``prompt`` moved to the front.

    Blank prompts leave the history unchanged. Matching is exact on the
    trimmed text, so a re-used prompt is never stored twice.
    """

    normalized = prompt.strip()
    existing = list(history)
    if not normalized:
        return existing[:limit]
    deduped = [item for item in existing if item != normalized]
    return [normalized, *deduped][:limit]
