"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from storybook_orchestrator.errors import DuplicateRecordError
from storybook_orchestrator.storage.models import (
    ErrorLogRecord,
    JobMappingRecord,
    MetricRecord,
    RateWindowRecord,
    RequestLogRecord,
    StoryDocumentRecord,
    StoryPageRecord,
    TaskRecord,
    TaskStatus,
)

# Mapping fields that may be patched, and which of them hold JSON payloads.
_MAPPING_COLUMNS = {
    "thread_id": False,
    "run_id": False,
    "status": False,
    "request_data": True,
    "response_data": True,
    "error_message": False,
    "retry_count": False,
    "max_retries": False,
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS story_tasks (
        task_id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        brief TEXT NOT NULL,
        tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        custom_tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_story_tasks_user_id
    ON story_tasks(user_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS job_mappings (
        mapping_id UUID PRIMARY KEY,
        local_task_id UUID NOT NULL UNIQUE REFERENCES story_tasks(task_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        thread_id TEXT,
        run_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        request_data JSONB,
        response_data JSONB,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_job_mappings_external_ids
    ON job_mappings(thread_id, run_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_windows (
        window_id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        window_start TIMESTAMPTZ NOT NULL,
        window_seconds INTEGER NOT NULL DEFAULT 3600,
        max_requests INTEGER NOT NULL DEFAULT 100,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        UNIQUE (user_id, operation, window_start)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rate_windows_user_operation
    ON rate_windows(user_id, operation, window_start DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS story_documents (
        document_id UUID PRIMARY KEY,
        task_id UUID NOT NULL UNIQUE REFERENCES story_tasks(task_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_pages (
        document_id UUID NOT NULL REFERENCES story_documents(document_id) ON DELETE CASCADE,
        page_number INTEGER NOT NULL,
        content TEXT NOT NULL,
        image_description TEXT NOT NULL,
        PRIMARY KEY (document_id, page_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS error_logs (
        log_id BIGSERIAL PRIMARY KEY,
        user_id TEXT,
        operation TEXT,
        error_type TEXT NOT NULL,
        error_message TEXT NOT NULL,
        stack_trace TEXT,
        request_data JSONB,
        severity TEXT NOT NULL DEFAULT 'error',
        resolved BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_error_logs_created_at
    ON error_logs(created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS request_logs (
        log_id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        method TEXT NOT NULL,
        request_body JSONB,
        response_body JSONB,
        status_code INTEGER NOT NULL,
        response_time_ms INTEGER NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_request_logs_user_created
    ON request_logs(user_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS system_metrics (
        metric_id BIGSERIAL PRIMARY KEY,
        metric_name TEXT NOT NULL,
        metric_value DOUBLE PRECISION NOT NULL,
        metric_unit TEXT,
        tags JSONB NOT NULL DEFAULT '{}'::jsonb,
        recorded_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_system_metrics_name_time
    ON system_metrics(metric_name, recorded_at)
    """,
)


class PostgresStoryStorage:
    """Persist tasks, job mappings, rate windows, documents and audit rows in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("STORYBOOK_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper, self._unique_violation = (
            self._load_psycopg()
        )

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()

    def create_task(
        self,
        *,
        brief: str,
        tags: list[str],
        custom_tags: list[str],
        user_id: str,
    ) -> TaskRecord:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO story_tasks (
                    task_id,
                    user_id,
                    brief,
                    tags,
                    custom_tags,
                    status,
                    progress,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    task_id,
                    user_id,
                    brief,
                    self._json_wrapper(list(tags)),
                    self._json_wrapper(list(custom_tags)),
                    "pending",
                    0,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist story task")
        return self._row_to_task(row)

    def get_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM story_tasks WHERE task_id::text = %s AND user_id = %s",
                (task_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def set_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error_message: str | None = None,
        completed_at: datetime | None = None,
        progress: int | None = None,
    ) -> TaskRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE story_tasks
                SET status = %s,
                    error_message = COALESCE(%s, error_message),
                    completed_at = COALESCE(%s, completed_at),
                    progress = COALESCE(%s, progress),
                    updated_at = %s
                WHERE task_id::text = %s
                RETURNING *
                """,
                (status, error_message, completed_at, progress, datetime.now(tz=UTC), task_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Task {task_id} does not exist")
        return self._row_to_task(row)

    def create_mapping(
        self,
        *,
        local_task_id: str,
        user_id: str,
        status: TaskStatus,
        request_data: dict[str, Any] | None,
        retry_count: int = 0,
        max_retries: int = 3,
    ) -> JobMappingRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            try:
                row = conn.execute(
                    """
                    INSERT INTO job_mappings (
                        mapping_id,
                        local_task_id,
                        user_id,
                        status,
                        request_data,
                        retry_count,
                        max_retries,
                        created_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        uuid.uuid4(),
                        local_task_id,
                        user_id,
                        status,
                        self._json_wrapper(request_data) if request_data is not None else None,
                        retry_count,
                        max_retries,
                        now,
                        now,
                    ),
                ).fetchone()
                conn.commit()
            except self._unique_violation as exc:
                conn.rollback()
                raise DuplicateRecordError(
                    f"Job mapping for task {local_task_id} already exists"
                ) from exc
        if row is None:
            raise RuntimeError("Failed to persist job mapping")
        return self._row_to_mapping(row)

    def update_mapping(self, local_task_id: str, **patch: Any) -> JobMappingRecord:
        unknown = set(patch) - set(_MAPPING_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown job mapping fields: {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for column, value in patch.items():
            assignments.append(f"{column} = %s")
            if _MAPPING_COLUMNS[column] and value is not None:
                value = self._json_wrapper(value)
            values.append(value)
        assignments.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))
        values.append(local_task_id)

        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE job_mappings
                SET {", ".join(assignments)}
                WHERE local_task_id::text = %s
                RETURNING *
                """,
                tuple(values),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Job mapping for task {local_task_id} does not exist")
        return self._row_to_mapping(row)

    def get_mapping(self, local_task_id: str) -> JobMappingRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_mappings WHERE local_task_id::text = %s",
                (local_task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_mapping(row)

    def get_rate_window(
        self, user_id: str, operation: str, since: datetime
    ) -> RateWindowRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM rate_windows
                WHERE user_id = %s
                  AND operation = %s
                  AND window_start >= %s
                ORDER BY window_start DESC
                LIMIT 1
                """,
                (user_id, operation, since),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_window(row)

    def create_rate_window(
        self,
        *,
        user_id: str,
        operation: str,
        window_start: datetime,
        window_seconds: int,
        max_requests: int,
    ) -> RateWindowRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            try:
                row = conn.execute(
                    """
                    INSERT INTO rate_windows (
                        window_id,
                        user_id,
                        operation,
                        request_count,
                        window_start,
                        window_seconds,
                        max_requests,
                        created_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        uuid.uuid4(),
                        user_id,
                        operation,
                        1,
                        window_start,
                        window_seconds,
                        max_requests,
                        now,
                        now,
                    ),
                ).fetchone()
                conn.commit()
            except self._unique_violation as exc:
                conn.rollback()
                raise DuplicateRecordError(
                    f"Rate window for {user_id}/{operation} at {window_start} already exists"
                ) from exc
        if row is None:
            raise RuntimeError("Failed to persist rate window")
        return self._row_to_window(row)

    def increment_rate_window(self, window_id: str) -> RateWindowRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE rate_windows
                SET request_count = request_count + 1,
                    updated_at = %s
                WHERE window_id::text = %s
                RETURNING *
                """,
                (datetime.now(tz=UTC), window_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Rate window {window_id} does not exist")
        return self._row_to_window(row)

    def get_document(self, task_id: str, user_id: str) -> StoryDocumentRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM story_documents WHERE task_id::text = %s AND user_id = %s",
                (task_id, user_id),
            ).fetchone()
            if row is None:
                return None
            page_rows = conn.execute(
                """
                SELECT page_number, content, image_description
                FROM story_pages
                WHERE document_id = %s
                ORDER BY page_number
                """,
                (row["document_id"],),
            ).fetchall()
        return self._row_to_document(row, page_rows)

    def create_document(
        self,
        *,
        task_id: str,
        user_id: str,
        title: str,
        description: str | None,
        pages: list[StoryPageRecord],
    ) -> StoryDocumentRecord:
        document_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            try:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO story_documents (
                            document_id,
                            task_id,
                            user_id,
                            title,
                            description,
                            created_at
                        ) VALUES (%s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (document_id, task_id, user_id, title, description, now),
                    ).fetchone()
                    with conn.cursor() as cur:
                        cur.executemany(
                            """
                            INSERT INTO story_pages (
                                document_id,
                                page_number,
                                content,
                                image_description
                            ) VALUES (%s, %s, %s, %s)
                            """,
                            [
                                (document_id, page.page_number, page.text, page.image)
                                for page in pages
                            ],
                        )
            except self._unique_violation as exc:
                raise DuplicateRecordError(
                    f"Story document for task {task_id} already exists"
                ) from exc
        if row is None:
            raise RuntimeError("Failed to persist story document")
        return StoryDocumentRecord(
            document_id=str(row["document_id"]),
            task_id=str(row["task_id"]),
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            pages=[page.model_copy() for page in pages],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def log_error(self, record: ErrorLogRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO error_logs (
                    user_id,
                    operation,
                    error_type,
                    error_message,
                    stack_trace,
                    request_data,
                    severity,
                    resolved,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.user_id,
                    record.operation,
                    record.error_type,
                    record.error_message,
                    record.stack_trace,
                    (
                        self._json_wrapper(record.request_data)
                        if record.request_data is not None
                        else None
                    ),
                    record.severity,
                    record.resolved,
                    record.created_at,
                ),
            )
            conn.commit()

    def log_request(self, record: RequestLogRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO request_logs (
                    user_id,
                    operation,
                    method,
                    request_body,
                    response_body,
                    status_code,
                    response_time_ms,
                    ip_address,
                    user_agent,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.user_id,
                    record.operation,
                    record.method,
                    (
                        self._json_wrapper(record.request_body)
                        if record.request_body is not None
                        else None
                    ),
                    (
                        self._json_wrapper(record.response_body)
                        if record.response_body is not None
                        else None
                    ),
                    record.status_code,
                    record.response_time_ms,
                    record.ip_address,
                    record.user_agent,
                    record.created_at,
                ),
            )
            conn.commit()

    def record_metric(self, record: MetricRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_metrics (
                    metric_name,
                    metric_value,
                    metric_unit,
                    tags,
                    recorded_at
                ) VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    record.metric_name,
                    record.metric_value,
                    record.metric_unit,
                    self._json_wrapper(record.tags),
                    record.recorded_at,
                ),
            )
            conn.commit()

    def list_request_logs(self, user_id: str, since: datetime) -> list[RequestLogRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM request_logs
                WHERE user_id = %s
                  AND created_at >= %s
                ORDER BY created_at DESC
                """,
                (user_id, since),
            ).fetchall()
        return [
            RequestLogRecord(
                user_id=row["user_id"],
                operation=row["operation"],
                method=row["method"],
                request_body=self._parse_json_optional(row["request_body"]),
                response_body=self._parse_json_optional(row["response_body"]),
                status_code=int(row["status_code"]),
                response_time_ms=int(row["response_time_ms"]),
                ip_address=row["ip_address"],
                user_agent=row["user_agent"],
                created_at=self._parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def purge_audit_logs(
        self,
        *,
        request_logs_before: datetime,
        metrics_before: datetime,
        resolved_errors_before: datetime,
    ) -> int:
        with self._lock, self._connect() as conn:
            removed = 0
            removed += conn.execute(
                "DELETE FROM request_logs WHERE created_at < %s",
                (request_logs_before,),
            ).rowcount
            removed += conn.execute(
                "DELETE FROM system_metrics WHERE recorded_at < %s",
                (metrics_before,),
            ).rowcount
            removed += conn.execute(
                "DELETE FROM error_logs WHERE resolved = TRUE AND created_at < %s",
                (resolved_errors_before,),
            ).rowcount
            conn.commit()
        return removed

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any, type[Exception]]:
        try:
            import psycopg
            from psycopg.errors import UniqueViolation
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json, UniqueViolation

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_json_list(raw: Any) -> list[str]:
        if raw is None:
            return []
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return []
        return [str(item) for item in parsed]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        completed_raw = row.get("completed_at")
        return TaskRecord(
            task_id=str(row["task_id"]),
            user_id=row["user_id"],
            brief=row["brief"],
            tags=cls._parse_json_list(row["tags"]),
            custom_tags=cls._parse_json_list(row["custom_tags"]),
            status=row["status"],
            progress=int(row.get("progress") or 0),
            error_message=row.get("error_message"),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
            completed_at=cls._parse_datetime(completed_raw) if completed_raw else None,
        )

    @classmethod
    def _row_to_mapping(cls, row: Any) -> JobMappingRecord:
        return JobMappingRecord(
            mapping_id=str(row["mapping_id"]),
            local_task_id=str(row["local_task_id"]),
            user_id=row["user_id"],
            thread_id=row["thread_id"],
            run_id=row["run_id"],
            status=row["status"],
            request_data=cls._parse_json_optional(row["request_data"]),
            response_data=cls._parse_json_optional(row["response_data"]),
            error_message=row["error_message"],
            retry_count=int(row["retry_count"]),
            max_retries=int(row["max_retries"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_window(cls, row: Any) -> RateWindowRecord:
        return RateWindowRecord(
            window_id=str(row["window_id"]),
            user_id=row["user_id"],
            operation=row["operation"],
            request_count=int(row["request_count"]),
            window_start=cls._parse_datetime(row["window_start"]),
            window_seconds=int(row["window_seconds"]),
            max_requests=int(row["max_requests"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_document(cls, row: Any, page_rows: list[Any]) -> StoryDocumentRecord:
        return StoryDocumentRecord(
            document_id=str(row["document_id"]),
            task_id=str(row["task_id"]),
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            pages=[
                StoryPageRecord(
                    page_number=int(page["page_number"]),
                    text=page["content"],
                    image=page["image_description"],
                )
                for page in page_rows
            ],
            created_at=cls._parse_datetime(row["created_at"]),
        )
