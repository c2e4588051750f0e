from __future__ import annotations

import json

from foreman.results import REASON_ALREADY_RUNNING, REASON_TIMEOUT, JobFailure, JobResult


def test_duration_and_memory_derived_from_end_values() -> None:
    result = JobResult("report")
    result.start_time = 100.0
    result.start_memory = 1000
    result.end_time = 102.5
    result.end_memory = 1600
    assert result.duration == 2.5
    assert result.memory_used == 600


def test_derived_values_are_not_recomputed() -> None:
    result = JobResult("report")
    result.start_time = 100.0
    result.end_time = 101.0
    result.end_time = 150.0
    assert result.duration == 1.0
    assert result.end_time == 150.0


def test_explicit_values_win_over_derivation() -> None:
    result = JobResult("report")
    result.duration = 9.0
    result.memory_used = 42
    result.start_time = 100.0
    result.start_memory = 10
    result.end_time = 101.0
    result.end_memory = 20
    assert result.duration == 9.0
    assert result.memory_used == 42


def test_no_derivation_without_start_values() -> None:
    result = JobResult("report")
    result.end_time = 101.0
    result.end_memory = 5
    assert result.duration is None
    assert result.memory_used is None


def test_constructors_and_status() -> None:
    ok = JobResult.succeeded("a")
    assert ok.success and ok.status == "SUCCESS"

    skipped = JobResult.skipped_result("b", "busy", reason=REASON_ALREADY_RUNNING)
    assert skipped.skipped and not skipped.success
    assert skipped.status == "SKIPPED"
    assert skipped.reason == REASON_ALREADY_RUNNING
    assert not skipped.failed_outright

    timed_out = JobResult.failed("c", "too slow", reason=REASON_TIMEOUT)
    assert timed_out.timed_out and timed_out.status == "TIMEOUT"
    assert not timed_out.failed_outright

    failure = JobFailure.from_exception(RuntimeError("boom"))
    failed = JobResult.failed("d", "Job threw exception: boom", exception=failure)
    assert failed.failed_outright and failed.status == "FAILED"
    assert failed.exception.type == "RuntimeError"
    assert failed.exception.message == "boom"


def test_formatting() -> None:
    result = JobResult("fmt")
    assert result.formatted_duration == "N/A"
    assert result.formatted_memory == "N/A"
    result.duration = 0.25
    result.memory_used = 512 * 1024
    assert result.formatted_duration == "250ms"
    assert result.formatted_memory == "512KB"
    result = JobResult("fmt")
    result.duration = 125.0
    result.memory_used = 3 * 1024 * 1024
    assert result.formatted_duration == "2m 5s"
    assert result.formatted_memory == "3.0MB"
    assert result.memory_used_mb == 3.0


def test_summary_and_json() -> None:
    result = JobResult.succeeded("export", "done")
    result.duration = 1.5
    assert result.summary() == "[SUCCESS] export - done (Duration: 1.5s, Memory: N/A)"
    payload = json.loads(result.to_json())
    assert payload["job_name"] == "export"
    assert payload["status"] == "SUCCESS"
    assert payload["duration"] == 1.5
    assert "exception" not in payload
