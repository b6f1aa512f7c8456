"""Manuscript-related Pydantic models."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ChapterPlan(BaseModel):
    """One chapter of the book outline."""

    title: str = Field(min_length=1)
    purpose: str = ""


class Outline(BaseModel):
    """Book outline produced by the first pipeline step."""

    title: str = Field(min_length=1)
    logline: str = ""
    chapters: List[ChapterPlan] = Field(min_length=1)


class Character(BaseModel):
    """A principal character."""

    name: str = Field(min_length=1)
    tagline: str = ""


class ChapterDraft(BaseModel):
    """Prose for one chapter."""

    index: int = Field(ge=0)
    title: str = Field(min_length=1)
    prose: str = Field(min_length=1)
    synopsis: str = ""

    @field_validator("prose")
    @classmethod
    def prose_not_whitespace(cls, v: str) -> str:
        """Validate that prose is not only whitespace."""
        if not v.strip():
            raise ValueError("prose cannot be only whitespace")
        return v

    @property
    def word_count(self) -> int:
        return len(self.prose.split())


class ManuscriptResult(BaseModel):
    """Final artifact of a book generation job."""

    job_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    chapters: List[ChapterDraft] = Field(default_factory=list)
    cover_url: Optional[str] = None

    @property
    def word_count(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)
