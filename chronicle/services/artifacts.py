"""Persistence for step outputs and finished documents.

Step outputs live outside the job record: a step counts as complete exactly
when its output row exists, which is what lets the orchestrator tell a
finished step from one that was interrupted mid-way.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from chronicle.models.job import utcnow
from chronicle.utils.errors import ChronicleError, StoreError

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Service for step output and document records."""

    OUTPUTS_TABLE = "job_step_outputs"
    DOCUMENTS_TABLE = "documents"
    COVERS_BUCKET = "covers"

    def __init__(self, supabase_client: Any) -> None:
        self.supabase = supabase_client

    @staticmethod
    def _execute(query: Any, action: str) -> Any:
        try:
            return query.execute()
        except ChronicleError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    # ==================== STEP OUTPUTS ====================

    async def save_output(self, job_id: str, step: str, output: Any) -> None:
        """
        Persist the output of a completed step.

        Re-running an idempotent step overwrites its previous output.

        Args:
            job_id: Owning job
            step: Pipeline step name
            output: JSON-serializable step output
        """
        row = {
            "job_id": job_id,
            "step": step,
            "output": output,
            "created_at": utcnow().isoformat(),
        }
        query = self.supabase.table(self.OUTPUTS_TABLE).upsert(row, on_conflict="job_id,step")
        self._execute(query, f"save output of {step} for {job_id}")
        logger.debug(f"Saved output of {step} for {job_id}")

    async def load_outputs(self, job_id: str) -> Dict[str, Any]:
        """All persisted step outputs for a job, keyed by step name."""
        query = self.supabase.table(self.OUTPUTS_TABLE).select("*").eq("job_id", job_id)
        result = self._execute(query, f"load outputs for {job_id}")
        return {row["step"]: row["output"] for row in result.data or []}

    # ==================== COVERS ====================

    async def upload_cover(self, job_id: str, image: bytes) -> str:
        """
        Store a cover image in Supabase storage.

        The path is fixed per job, so a re-run overwrites the same object.

        Returns:
            Public URL of the uploaded file

        Raises:
            StoreError: If upload fails
        """
        file_path = f"covers/{job_id}/cover.png"
        try:
            bucket = self.supabase.storage.from_(self.COVERS_BUCKET)
            result = bucket.upload(
                path=file_path,
                file=image,
                file_options={"content-type": "image/png", "upsert": "true"},
            )
            if not result:
                raise StoreError("Upload returned empty result")

            public_url = bucket.get_public_url(file_path)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to upload cover for {job_id}: {e}") from e

        logger.info(f"Uploaded cover to {file_path}")
        return public_url

    # ==================== DOCUMENTS ====================

    async def find_document(self, job_id: str) -> Optional[str]:
        """document_id of the document created by ``job_id``, if any."""
        query = (
            self.supabase.table(self.DOCUMENTS_TABLE)
            .select("document_id")
            .eq("job_id", job_id)
            .limit(1)
        )
        result = self._execute(query, f"look up document for {job_id}")
        if not result.data:
            return None
        return result.data[0]["document_id"]

    async def save_document(
        self,
        owner_id: str,
        job_id: str,
        title: str,
        genre: str,
        content: str,
        cover_url: Optional[str] = None,
    ) -> str:
        """
        Create the finished document a job produced.

        A job owns at most one document: if an earlier run already created it
        (and then died before recording the step output), that document is
        returned instead of inserting a second one.

        Returns:
            The document_id of the job's document

        Raises:
            StoreError: If creation fails
        """
        existing = await self.find_document(job_id)
        if existing is not None:
            logger.info(f"Reusing document {existing} already created for job {job_id}")
            return existing

        document_id = str(uuid4())
        row = {
            "document_id": document_id,
            "owner_id": owner_id,
            "job_id": job_id,
            "title": title,
            "genre": genre,
            "content": content,
            "cover_url": cover_url,
            "created_at": utcnow().isoformat(),
        }
        result = self._execute(
            self.supabase.table(self.DOCUMENTS_TABLE).insert(row), f"create document for {job_id}"
        )
        if not result.data:
            raise StoreError("Failed to insert document into database")

        logger.info(f"Created document {document_id} for job {job_id}")
        return document_id
