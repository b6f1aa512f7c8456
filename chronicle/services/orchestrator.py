"""Step runner for resumable generation pipelines.

A pipeline is a fixed, ordered list of named steps. The orchestrator executes
them in order, persisting each step's output and then reporting progress
through a synchronous checkpoint callback. Re-entering a job picks up after
the last step whose output was persisted, so a crash anywhere costs at most
one step of work.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence

from chronicle.models.job import BookJobInput
from chronicle.models.manuscript import ManuscriptResult
from chronicle.services.artifacts import ArtifactStore
from chronicle.utils.errors import ExecutionAborted, InvalidTransition, StepError

logger = logging.getLogger(__name__)

# (step, progress, message); may raise ExecutionAborted to stop at this boundary
ProgressCallback = Callable[[str, int, str], Awaitable[None]]

# (step); awaited before a step's output is persisted, may raise ExecutionAborted
SaveGuard = Callable[[str], Awaitable[None]]


@dataclass
class StepContext:
    """Everything a step may read: the job input and earlier step outputs."""

    job_id: str
    owner_id: str
    input: BookJobInput
    outputs: Dict[str, Any]
    index: int
    total: int


StepFn = Callable[[StepContext], Awaitable[Any]]


@dataclass(frozen=True)
class Step:
    """One named unit of a pipeline.

    Non-idempotent steps run at most once per job: if their output already
    exists they are skipped and the stored output is reused.
    """

    name: str
    run: StepFn
    idempotent: bool = True
    description: str = ""


@dataclass
class Pipeline:
    steps: Sequence[Step] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("pipeline needs at least one step")
        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate step names in pipeline: {names}")

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __getitem__(self, index: int) -> Step:
        return self.steps[index]

    def __contains__(self, name: object) -> bool:
        return any(step.name == name for step in self.steps)

    @property
    def names(self) -> List[str]:
        return [step.name for step in self.steps]

    def index(self, name: str) -> int:
        return self.names.index(name)


def compute_progress(completed: int, total: int) -> int:
    """floor(completed / total * 100), held at 99 until the job succeeds."""
    if total <= 0:
        return 0
    return max(0, min(99, (completed * 100) // total))


class Orchestrator:
    """Runs a job's pipeline from its last checkpoint to completion."""

    def __init__(
        self,
        pipeline_factory: Callable[[BookJobInput], Pipeline],
        artifacts: ArtifactStore,
    ) -> None:
        """
        Initialize the Orchestrator.

        Args:
            pipeline_factory: Builds the step list for a job input
            artifacts: Store holding step outputs
        """
        self.pipeline_factory = pipeline_factory
        self.artifacts = artifacts

    def _start_index(
        self,
        job_id: str,
        pipeline: Pipeline,
        outputs: Dict[str, Any],
        resume_from: Optional[str],
    ) -> int:
        if resume_from is None:
            start = 0
        elif resume_from not in pipeline:
            raise InvalidTransition(job_id, f"unknown step '{resume_from}'")
        else:
            position = pipeline.index(resume_from)
            # A checkpointed step without output was interrupted mid-way
            start = position + 1 if resume_from in outputs else position

        for position in range(start):
            if pipeline[position].name not in outputs:
                logger.warning(
                    f"Job {job_id}: output of '{pipeline[position].name}' missing; "
                    f"resuming there instead of step {start + 1}"
                )
                return position
        return start

    async def run(
        self,
        job_id: str,
        owner_id: str,
        job_input: BookJobInput,
        on_progress: ProgressCallback,
        resume_from: Optional[str] = None,
        before_save: Optional[SaveGuard] = None,
    ) -> ManuscriptResult:
        """
        Execute the pipeline for a job.

        Args:
            job_id: The job being advanced
            owner_id: The requesting user (passed through to steps)
            job_input: Validated job input
            on_progress: Checkpoint callback invoked at every step boundary
            resume_from: The step recorded on the job, if any
            before_save: Ownership check run before each step output is written

        Returns:
            The ManuscriptResult produced by the final step

        Raises:
            StepError: On the first step that raises
            ExecutionAborted: If the checkpoint callback or save guard stops the run
        """
        pipeline = self.pipeline_factory(job_input)
        total = len(pipeline)
        outputs = await self.artifacts.load_outputs(job_id)
        start = self._start_index(job_id, pipeline, outputs, resume_from)

        if start >= total:
            logger.info(f"Job {job_id}: every step already complete")
        elif start > 0:
            logger.info(f"Job {job_id}: resuming at step {start + 1}/{total} ({pipeline[start].name})")

        for index in range(start, total):
            step = pipeline[index]

            if not step.idempotent and step.name in outputs:
                logger.info(f"Job {job_id}: skipping '{step.name}', reusing its stored output")
                output = outputs[step.name]
            else:
                await on_progress(
                    step.name,
                    compute_progress(index, total),
                    step.description or f"Running {step.name}...",
                )

                context = StepContext(
                    job_id=job_id,
                    owner_id=owner_id,
                    input=job_input,
                    outputs=dict(outputs),
                    index=index,
                    total=total,
                )
                try:
                    output = await step.run(context)
                except ExecutionAborted:
                    raise
                except Exception as e:
                    logger.error(f"Job {job_id}: step '{step.name}' ({index + 1}/{total}) failed: {e}")
                    raise StepError(step.name, e) from e

                if before_save is not None:
                    await before_save(step.name)
                await self.artifacts.save_output(job_id, step.name, output)

            outputs[step.name] = output
            completed = index + 1
            if completed < total:
                await on_progress(
                    step.name,
                    compute_progress(completed, total),
                    f"Completed {step.name} ({completed}/{total})",
                )

        final = pipeline[total - 1].name
        return ManuscriptResult.model_validate(outputs[final])
