"""Test doubles shared by the Chronicle test suite."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from chronicle.api.deps import Services, build_services
from chronicle.config import Settings
from chronicle.models.job import BookJobInput
from chronicle.services.artifacts import ArtifactStore
from chronicle.services.book_steps import BookSteps


# ==================== Mock Supabase Client ====================


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: Optional[List[Dict[str, Any]]] = None) -> None:
        self.data = data or []


class MockUniqueViolation(Exception):
    """Raised on duplicate primary keys, like PostgREST's 23505 error."""


def _coerce(value: Any) -> Any:
    if isinstance(value, str) and "T" in value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class MockQuery:
    """One query against a mock table; supports the builder calls the services use."""

    def __init__(self, table: "MockSupabaseTable") -> None:
        self._table = table
        self._action = "select"
        self._payload: Any = None
        self._filters: List[Tuple[str, str, Any]] = []
        self._order: Optional[Tuple[str, bool]] = None
        self._limit_value: Optional[int] = None
        self._on_conflict: Optional[str] = None
        self._ignore_duplicates = False

    def select(self, columns: str = "*") -> "MockQuery":
        self._action = "select"
        return self

    def insert(self, data: Dict[str, Any]) -> "MockQuery":
        self._action = "insert"
        self._payload = data
        return self

    def upsert(
        self,
        data: Dict[str, Any],
        on_conflict: Optional[str] = None,
        ignore_duplicates: bool = False,
    ) -> "MockQuery":
        self._action = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data: Dict[str, Any]) -> "MockQuery":
        self._action = "update"
        self._payload = data
        return self

    def delete(self) -> "MockQuery":
        self._action = "delete"
        return self

    def eq(self, field: str, value: Any) -> "MockQuery":
        self._filters.append(("eq", field, value))
        return self

    def in_(self, field: str, values: List[Any]) -> "MockQuery":
        self._filters.append(("in", field, list(values)))
        return self

    def lt(self, field: str, value: Any) -> "MockQuery":
        self._filters.append(("lt", field, value))
        return self

    def lte(self, field: str, value: Any) -> "MockQuery":
        self._filters.append(("lte", field, value))
        return self

    def gte(self, field: str, value: Any) -> "MockQuery":
        self._filters.append(("gte", field, value))
        return self

    def order(self, field: str, desc: bool = False) -> "MockQuery":
        self._order = (field, desc)
        return self

    def limit(self, count: int) -> "MockQuery":
        self._limit_value = count
        return self

    def _matches(self, record: Dict[str, Any]) -> bool:
        for op, field, value in self._filters:
            current = record.get(field)
            if op == "eq" and current != value:
                return False
            if op == "in" and current not in value:
                return False
            if op in ("lt", "lte", "gte"):
                if current is None:
                    return False
                left, right = _coerce(current), _coerce(value)
                if op == "lt" and not left < right:
                    return False
                if op == "lte" and not left <= right:
                    return False
                if op == "gte" and not left >= right:
                    return False
        return True

    def execute(self) -> MockSupabaseResponse:
        table = self._table
        table.client.calls.append((table.name, self._action))

        if self._action == "insert":
            key = table.key_of(self._payload)
            if key in table.rows:
                raise MockUniqueViolation(f"duplicate key value violates unique constraint on {table.name}")
            table.rows[key] = dict(self._payload)
            return MockSupabaseResponse([dict(self._payload)])

        if self._action == "upsert":
            key = table.key_of(self._payload)
            if key in table.rows:
                if self._ignore_duplicates:
                    return MockSupabaseResponse([])
                table.rows[key].update(self._payload)
            else:
                table.rows[key] = dict(self._payload)
            return MockSupabaseResponse([dict(table.rows[key])])

        matched = [key for key, row in table.rows.items() if self._matches(row)]

        if self._action == "update":
            for key in matched:
                table.rows[key].update(self._payload)
            return MockSupabaseResponse([dict(table.rows[key]) for key in matched])

        if self._action == "delete":
            return MockSupabaseResponse([table.rows.pop(key) for key in matched])

        results = [dict(table.rows[key]) for key in matched]
        if self._order is not None:
            field, desc = self._order
            results.sort(key=lambda row: (row.get(field) is None, _coerce(row.get(field))), reverse=desc)
        if self._limit_value is not None:
            results = results[: self._limit_value]
        return MockSupabaseResponse(results)


class MockSupabaseTable:
    """In-memory rows for one table, keyed by its primary key."""

    PRIMARY_KEYS: Dict[str, Tuple[str, ...]] = {
        "jobs": ("id",),
        "job_step_outputs": ("job_id", "step"),
        "documents": ("document_id",),
        "job_queue": ("job_id",),
    }

    def __init__(self, client: "MockSupabaseClient", name: str) -> None:
        self.client = client
        self.name = name
        self.rows: Dict[Tuple[Any, ...], Dict[str, Any]] = {}

    def key_of(self, row: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(row.get(field) for field in self.PRIMARY_KEYS.get(self.name, ("id",)))


class MockBucket:
    def __init__(self, storage: "MockStorage", name: str) -> None:
        self.storage = storage
        self.name = name

    def upload(self, path: str, file: bytes, file_options: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        self.storage.files[(self.name, path)] = file
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/{self.name}/{path}"


class MockStorage:
    def __init__(self) -> None:
        self.files: Dict[Tuple[str, str], bytes] = {}

    def from_(self, bucket: str) -> MockBucket:
        return MockBucket(self, bucket)


class MockSupabaseClient:
    """Mock Supabase client for testing."""

    def __init__(self) -> None:
        self._tables: Dict[str, MockSupabaseTable] = {}
        self.storage = MockStorage()
        self.calls: List[Tuple[str, str]] = []

    def table(self, name: str) -> MockQuery:
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable(self, name)
        return MockQuery(self._tables[name])

    def get_all_records(self, table_name: str) -> List[Dict[str, Any]]:
        """Get all records from a table (for testing)."""
        if table_name in self._tables:
            return [dict(row) for row in self._tables[table_name].rows.values()]
        return []

    def patch_row(self, table_name: str, key: Tuple[Any, ...], **changes: Any) -> None:
        """Edit a stored row directly, bypassing the services."""
        self._tables[table_name].rows[key].update(changes)


# ==================== Clock ====================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ==================== Fake Providers ====================


class ScriptedWriter:
    """Language provider that answers each kind of step prompt with canned JSON."""

    def __init__(self, fail_chapters: Optional[Dict[int, int]] = None) -> None:
        """
        Args:
            fail_chapters: chapter number -> how many calls for it should fail
        """
        self.fail_chapters = dict(fail_chapters or {})
        self.prompts: List[str] = []

    async def generate(self, prompt: str, context: str = "") -> str:
        self.prompts.append(prompt)

        if "Plan a" in prompt:
            count = int(prompt.split("exactly ")[1].split(" ")[0])
            return json.dumps(
                {
                    "title": "The Quiet Ledger",
                    "logline": "An accountant finds a murder hidden in the books.",
                    "chapters": [
                        {"title": f"Part {n}", "purpose": f"Advance the case {n}"}
                        for n in range(1, count + 1)
                    ],
                }
            )

        if "principal cast" in prompt:
            return "```json\n" + json.dumps(
                [
                    {"name": "Ada Finch", "tagline": "Auditor who cannot leave a sum unbalanced"},
                    {"name": "Tom Wren", "tagline": "Night clerk with a borrowed alibi"},
                ]
            ) + "\n```"

        if prompt.lstrip().startswith("Write chapter"):
            number = int(prompt.split("Write chapter ")[1].split(" ")[0])
            if self.fail_chapters.get(number, 0) > 0:
                self.fail_chapters[number] -= 1
                raise RuntimeError(f"provider timed out on chapter {number}")
            return json.dumps({"prose": f"Prose of chapter {number}.", "synopsis": f"Chapter {number} happens."})

        return f"Polished: {prompt}"


class BlockingWriter(ScriptedWriter):
    """Scripted writer that parks inside one chapter until released."""

    def __init__(self, block_chapter: int = 1, stale_prose: Optional[str] = None, **kwargs: Any) -> None:
        """
        Args:
            block_chapter: Chapter whose prompt waits for ``release``
            stale_prose: Prose returned for that chapter once released
        """
        super().__init__(**kwargs)
        self.block_chapter = block_chapter
        self.stale_prose = stale_prose
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt: str, context: str = "") -> str:
        if prompt.lstrip().startswith(f"Write chapter {self.block_chapter} "):
            self.entered.set()
            await self.release.wait()
            if self.stale_prose is not None:
                self.prompts.append(prompt)
                return json.dumps({"prose": self.stale_prose, "synopsis": "Written too late."})
        return await super().generate(prompt, context)

    def calls_for_chapter(self, number: int) -> int:
        return sum(1 for p in self.prompts if p.lstrip().startswith(f"Write chapter {number} "))


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "environment": "test",
        "service_secret": "test-secret",
        "lease_duration_seconds": 300,
        "stale_timeout_minutes": 5,
        "max_auto_resume_attempts": 3,
        "max_jobs_per_run": 10,
        "cleanup_timeout_minutes": 60,
        "run_worker": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_services(
    client: Optional[MockSupabaseClient] = None,
    writer: Optional[Any] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """Wire the full core around a mock client and scripted providers."""
    client = client or MockSupabaseClient()
    artifacts = ArtifactStore(client)
    steps = BookSteps(writer=writer or ScriptedWriter(), artifacts=artifacts)
    kwargs: Dict[str, Any] = {"steps": steps}
    if clock is not None:
        kwargs["clock"] = clock
    return build_services(client, settings or make_settings(), **kwargs)


def mystery_input(**overrides: Any) -> BookJobInput:
    data: Dict[str, Any] = {"genre": "mystery", "steps": 6}
    data.update(overrides)
    return BookJobInput.model_validate(data)


async def wait_for(event: asyncio.Event, timeout: float = 2.0) -> None:
    await asyncio.wait_for(event.wait(), timeout=timeout)
