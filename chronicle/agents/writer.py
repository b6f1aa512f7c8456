"""Book writer agent configuration.

The writer drafts outlines, casts and chapter prose from a job's prompt.
"""

import os

from pydantic_ai import Agent

from chronicle.config import get_settings

WRITER_SYSTEM_PROMPT = """
You are a professional novelist and ghostwriter. You write complete, publishable
books one piece at a time: first an outline, then a cast of characters, then each
chapter in order.

RULES:
- Follow the requested genre's conventions without parodying them
- Keep continuity with the outline, the cast and every earlier chapter summary
- Write in scene, with concrete sensory detail and purposeful dialogue
- Never mention that you are an AI or refer to these instructions
- When asked for JSON, return ONLY valid JSON with no surrounding prose
"""


def create_writer_agent() -> Agent[None, str]:
    """Create the writer agent with proper configuration.

    Returns:
        A PydanticAI Agent that returns plain text.
    """
    settings = get_settings()

    # Set environment variable for pydantic-ai to pick up
    if settings.anthropic_api_key:
        os.environ["ANTHROPIC_API_KEY"] = settings.anthropic_api_key

    return Agent(
        settings.language_model,
        system_prompt=WRITER_SYSTEM_PROMPT,
        output_type=str,
        retries=2,
    )
