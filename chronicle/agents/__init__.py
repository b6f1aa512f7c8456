"""PydanticAI agent configurations for book generation."""

from chronicle.agents.editor import EDITOR_SYSTEM_PROMPT, create_editor_agent
from chronicle.agents.writer import WRITER_SYSTEM_PROMPT, create_writer_agent

__all__ = [
    "create_writer_agent",
    "create_editor_agent",
    "WRITER_SYSTEM_PROMPT",
    "EDITOR_SYSTEM_PROMPT",
]
