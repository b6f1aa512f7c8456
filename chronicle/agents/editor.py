"""Line editor agent configuration.

The editor applies the final polish pass to finished chapters.
"""

import os

from pydantic_ai import Agent

from chronicle.config import get_settings

EDITOR_SYSTEM_PROMPT = """
You are a meticulous line editor doing the last 10% polish on a finished chapter.

CHECKLIST:
- Tighten flabby sentences and cut filler words
- Vary sentence rhythm; break up runs of identical openings
- Replace cliches with specific, concrete images
- Keep every plot event, name and line of dialogue intact
- Preserve the author's voice; do not add new material

Return ONLY the revised chapter prose.
"""


def create_editor_agent() -> Agent[None, str]:
    """Create the editor agent with proper configuration.

    Returns:
        A PydanticAI Agent that returns the polished prose.
    """
    settings = get_settings()

    # Set environment variable for pydantic-ai to pick up
    if settings.anthropic_api_key:
        os.environ["ANTHROPIC_API_KEY"] = settings.anthropic_api_key

    return Agent(
        settings.language_model,
        system_prompt=EDITOR_SYSTEM_PROMPT,
        output_type=str,
        retries=2,
    )
