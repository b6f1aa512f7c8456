"""Book generation pipeline: outline → characters → chapter drafts → polish → finalize."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from chronicle.models.job import BookJobInput
from chronicle.models.manuscript import ChapterDraft, Character, ManuscriptResult, Outline
from chronicle.services.artifacts import ArtifactStore
from chronicle.services.orchestrator import Pipeline, Step, StepContext
from chronicle.services.providers import ImageProvider, LanguageProvider

logger = logging.getLogger(__name__)

CHAPTER_STEP_PATTERN = re.compile(r"^chapter-draft-(\d+)$")

STEP_DESCRIPTIONS = {
    "outline": "Creating story foundation...",
    "characters": "Casting characters...",
    "polish": "Polishing prose...",
    "cover": "Painting the cover...",
    "finalize": "Finalizing...",
}


def chapter_step_name(number: int) -> str:
    return f"chapter-draft-{number}"


def describe_step(step: Optional[str]) -> str:
    """Human-readable description of a pipeline step."""
    if not step:
        return "Starting..."
    match = CHAPTER_STEP_PATTERN.match(step)
    if match:
        return f"Writing chapter {match.group(1)}..."
    return STEP_DESCRIPTIONS.get(step, "Generating...")


def parse_ai_json(text: str) -> Any:
    """
    Parse JSON from a model response.

    Accepts bare JSON or JSON wrapped in a fenced code block.

    Raises:
        ValueError: If no JSON can be recovered
    """
    match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    candidate = (match.group(1) if match else text).strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    # Fall back to the outermost object or array in the text
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = candidate.find(opener), candidate.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                continue

    raise ValueError(f"Failed to parse JSON: {text[:200]}...")


class BookSteps:
    """Step bodies for the book pipeline.

    Every step is a function of the job input and earlier step outputs only,
    so re-running one after a crash reproduces an equivalent result.
    """

    def __init__(
        self,
        writer: LanguageProvider,
        artifacts: ArtifactStore,
        editor: Optional[LanguageProvider] = None,
        image: Optional[ImageProvider] = None,
    ) -> None:
        self.writer = writer
        self.editor = editor or writer
        self.image = image
        self.artifacts = artifacts

    # ==================== PIPELINE ====================

    def build_pipeline(self, job_input: BookJobInput) -> Pipeline:
        steps: List[Step] = [
            Step("outline", self.outline, description=STEP_DESCRIPTIONS["outline"]),
            Step("characters", self.characters, description=STEP_DESCRIPTIONS["characters"]),
        ]
        for number in range(1, job_input.chapters + 1):
            steps.append(
                Step(chapter_step_name(number), self.chapter_draft, description=f"Writing chapter {number}...")
            )
        steps.append(Step("polish", self.polish, description=STEP_DESCRIPTIONS["polish"]))
        if job_input.with_cover:
            steps.append(Step("cover", self.cover, description=STEP_DESCRIPTIONS["cover"]))
        # Creates the document row; must never run twice for one job
        steps.append(
            Step("finalize", self.finalize, idempotent=False, description=STEP_DESCRIPTIONS["finalize"])
        )
        return Pipeline(steps)

    # ==================== HELPERS ====================

    @staticmethod
    def _outline(ctx: StepContext) -> Outline:
        return Outline.model_validate(ctx.outputs["outline"])

    @staticmethod
    def _drafts(ctx: StepContext) -> List[ChapterDraft]:
        drafts = []
        for name, output in ctx.outputs.items():
            if CHAPTER_STEP_PATTERN.match(name):
                drafts.append(ChapterDraft.model_validate(output))
        return sorted(drafts, key=lambda draft: draft.index)

    @staticmethod
    def _story_context(ctx: StepContext, outline: Outline) -> str:
        lines = [
            f"GENRE: {ctx.input.genre}",
            f"TITLE: {outline.title}",
            f"LOGLINE: {outline.logline}",
            "",
            "CHAPTER PLAN:",
        ]
        for number, chapter in enumerate(outline.chapters, start=1):
            lines.append(f"{number}. {chapter.title} - {chapter.purpose}")

        cast = ctx.outputs.get("characters") or []
        if cast:
            lines.append("")
            lines.append("CAST:")
            for character in cast:
                lines.append(f"- {character['name']}: {character.get('tagline', '')}")
        return "\n".join(lines)

    # ==================== STEPS ====================

    async def outline(self, ctx: StepContext) -> Dict[str, Any]:
        """Plan the book: title, logline and exactly ``chapters`` chapters."""
        count = ctx.input.chapters
        prompt = f"""
Plan a {ctx.input.genre} book with exactly {count} chapters.

PREMISE:
{ctx.input.prompt or f"An original {ctx.input.genre} story."}

Return ONLY valid JSON:
{{"title": "...", "logline": "...", "chapters": [{{"title": "...", "purpose": "..."}}]}}
"""
        data = parse_ai_json(await self.writer.generate(prompt))
        if ctx.input.title:
            data["title"] = ctx.input.title

        try:
            outline = Outline.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Outline response did not match schema: {e}") from e

        if len(outline.chapters) < count:
            raise ValueError(f"Outline has {len(outline.chapters)} chapters, expected {count}")
        outline.chapters = outline.chapters[:count]
        return outline.model_dump()

    async def characters(self, ctx: StepContext) -> List[Dict[str, Any]]:
        """Create the principal cast."""
        outline = self._outline(ctx)
        prompt = """
Create the principal cast for this book (3 to 6 characters).

Return ONLY a valid JSON array:
[{"name": "...", "tagline": "one sentence on who they are and what they want"}]
"""
        data = parse_ai_json(await self.writer.generate(prompt, self._story_context(ctx, outline)))
        if not isinstance(data, list) or not data:
            raise ValueError("Character response was not a non-empty list")
        return [Character.model_validate(item).model_dump() for item in data]

    async def chapter_draft(self, ctx: StepContext) -> Dict[str, Any]:
        """Draft the chapter this step is named after."""
        outline = self._outline(ctx)
        # Chapter steps follow outline and characters
        chapter_index = ctx.index - 2
        plan = outline.chapters[chapter_index]

        previous = [draft for draft in self._drafts(ctx) if draft.index < chapter_index]
        story_so_far = "\n".join(f"Chapter {d.index + 1}: {d.synopsis}" for d in previous)

        prompt = f"""
Write chapter {chapter_index + 1} of {len(outline.chapters)}: "{plan.title}".
Purpose: {plan.purpose}

STORY SO FAR:
{story_so_far or "This is the opening chapter."}

Return ONLY valid JSON: {{"prose": "the full chapter", "synopsis": "2-3 sentence summary"}}
"""
        text = await self.writer.generate(prompt, self._story_context(ctx, outline))
        try:
            data = parse_ai_json(text)
            prose, synopsis = data["prose"], data.get("synopsis", "")
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Job {ctx.job_id}: chapter {chapter_index + 1} was not JSON; using raw text")
            prose, synopsis = text, ""

        draft = ChapterDraft(index=chapter_index, title=plan.title, prose=prose, synopsis=synopsis)
        logger.debug(f"Job {ctx.job_id}: drafted chapter {chapter_index + 1} ({draft.word_count} words)")
        return draft.model_dump()

    async def polish(self, ctx: StepContext) -> Dict[str, Any]:
        """Apply the editor pass in polished mode; draft mode keeps prose as written."""
        drafts = self._drafts(ctx)
        if ctx.input.mode == "draft":
            return {"chapters": [draft.model_dump() for draft in drafts]}

        polished = []
        for draft in drafts:
            prose = await self.editor.generate(draft.prose)
            polished.append(draft.model_copy(update={"prose": prose}).model_dump())
        return {"chapters": polished}

    async def cover(self, ctx: StepContext) -> Dict[str, Any]:
        """Generate and upload a cover image."""
        if self.image is None:
            logger.info(f"Job {ctx.job_id}: no image provider configured; skipping cover")
            return {"cover_url": None}

        outline = self._outline(ctx)
        prompt = (
            f"Book cover illustration for a {ctx.input.genre} novel titled "
            f'"{outline.title}". {outline.logline} No text or lettering.'
        )
        image = await self.image.generate(prompt)
        return {"cover_url": await self.artifacts.upload_cover(ctx.job_id, image)}

    async def finalize(self, ctx: StepContext) -> Dict[str, Any]:
        """Assemble the manuscript and create its document."""
        outline = self._outline(ctx)
        chapters = [ChapterDraft.model_validate(c) for c in ctx.outputs["polish"]["chapters"]]
        cover_url = (ctx.outputs.get("cover") or {}).get("cover_url")

        content = "\n\n".join(f"# {chapter.title}\n\n{chapter.prose}" for chapter in chapters)
        document_id = await self.artifacts.save_document(
            owner_id=ctx.owner_id,
            job_id=ctx.job_id,
            title=outline.title,
            genre=ctx.input.genre,
            content=content,
            cover_url=cover_url,
        )

        result = ManuscriptResult(
            job_id=ctx.job_id,
            document_id=document_id,
            title=outline.title,
            chapters=chapters,
            cover_url=cover_url,
        )
        logger.info(f"Job {ctx.job_id}: manuscript '{result.title}' finalized ({result.word_count} words)")
        return result.model_dump()


def create_book_steps(artifacts: ArtifactStore) -> BookSteps:
    """Create BookSteps wired to the configured providers."""
    from chronicle.services.providers import (
        create_editor_provider,
        create_image_provider,
        create_language_provider,
    )

    return BookSteps(
        writer=create_language_provider(),
        artifacts=artifacts,
        editor=create_editor_provider(),
        image=create_image_provider(),
    )
