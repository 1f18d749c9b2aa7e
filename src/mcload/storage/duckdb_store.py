from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import timezone
from pathlib import Path

import duckdb
import pandas as pd

from mcload.config import RunConfig
from mcload.metrics import ErrorType, Report


@dataclass(slots=True)
class Storage:
    db_path: Path

    def __post_init__(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(str(self.db_path))

    def _init_schema(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS run_reports (
                    run_id TEXT PRIMARY KEY,
                    created_at TIMESTAMP,
                    config_json TEXT,
                    notes TEXT,
                    concurrency INTEGER,
                    total_requests BIGINT,
                    total_responses BIGINT,
                    total_errors BIGINT,
                    total_time_seconds DOUBLE,
                    rps BIGINT,
                    mean_time_ms DOUBLE,
                    errors_json TEXT
                );
                """
            )

    def run_exists(self, run_id: str) -> bool:
        with self._connect() as con:
            result = con.execute(
                "SELECT COUNT(*) FROM run_reports WHERE run_id = ?",
                [run_id],
            ).fetchone()
            return bool(result and result[0] > 0)

    def save_report(self, config: RunConfig, report: Report) -> str:
        run_id = config.run_id or uuid.uuid4().hex
        if self.run_exists(run_id):
            msg = f"Run {run_id} already exists"
            raise ValueError(msg)
        metadata = dict(config.to_metadata())
        metadata["run_id"] = run_id
        errors = {k.value: v for k, v in report.errors_by_type.items()}
        with self._connect() as con:
            con.execute(
                "INSERT INTO run_reports VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    run_id,
                    config.created_at.astimezone(timezone.utc).replace(tzinfo=None),
                    json.dumps(metadata),
                    config.notes,
                    report.concurrency,
                    report.total_requests,
                    report.total_responses,
                    report.total_errors,
                    report.total_time_seconds,
                    report.rps,
                    report.mean_time_ms,
                    json.dumps(errors),
                ],
            )
        return run_id

    def list_reports(self) -> pd.DataFrame:
        with self._connect() as con:
            return con.execute(
                """
                SELECT run_id, created_at, concurrency, total_requests, total_responses,
                       total_errors, total_time_seconds, rps, mean_time_ms, notes
                FROM run_reports ORDER BY created_at DESC
                """
            ).fetchdf()

    def load_report(self, run_id: str) -> Report | None:
        with self._connect() as con:
            row = con.execute(
                """
                SELECT concurrency, total_requests, total_responses, total_errors,
                       total_time_seconds, rps, mean_time_ms, errors_json
                FROM run_reports WHERE run_id = ?
                """,
                [run_id],
            ).fetchone()
        if not row:
            return None
        errors = {ErrorType(k): int(v) for k, v in json.loads(row[7]).items()}
        return Report(
            concurrency=int(row[0]),
            total_requests=int(row[1]),
            total_responses=int(row[2]),
            total_errors=int(row[3]),
            total_time_seconds=float(row[4]),
            rps=int(row[5]),
            mean_time_ms=float(row[6]),
            errors_by_type=errors,
        )

    def load_run_meta(self, run_id: str) -> dict[str, object] | None:
        with self._connect() as con:
            row = con.execute(
                "SELECT config_json FROM run_reports WHERE run_id = ?",
                [run_id],
            ).fetchone()
            if not row:
                return None
            return json.loads(row[0])
