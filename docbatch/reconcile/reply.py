"""Interpretation of the worker's synchronous reply to a batch dispatch.

The worker answers in several shapes: nothing at all, a bare acknowledgement,
an explicit ``success: false`` rejection, or a finished result carrying the
artifact location under one of a handful of historical keys.
"""

import json
from dataclasses import dataclass
from typing import Any

IMPLICIT_ACCEPTANCE = {
    "status": "accepted",
    "message": "Worker accepted the request without a structured reply",
}

_RESULT_REF_PATHS: tuple[tuple[str, ...], ...] = (
    ("result_ref",),
    ("resultRef",),
    ("result_url",),
    ("result_file_url",),
    ("excelUrl",),
    ("data", "excel_url"),
    ("data", "excelDownloadUrl"),
    ("data", "arquivo", "urls", "excel_download"),
    ("data", "arquivos", "excel", "url"),
)

_RESULT_FILENAME_PATHS: tuple[tuple[str, ...], ...] = (
    ("result_filename",),
    ("data", "excelFilename"),
    ("data", "arquivo", "excel_filename"),
    ("data", "arquivos", "excel", "nome"),
)


@dataclass(frozen=True)
class WorkerReply:
    accepted: bool
    body: dict[str, Any]
    error_message: str | None = None
    estimated_time_minutes: int | None = None
    result_ref: str | None = None
    result_filename: str | None = None


def _dig(body: Any, path: tuple[str, ...]) -> Any:
    current = body
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_string(body: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> str | None:
    for path in paths:
        value = _dig(body, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_result_ref(body: dict[str, Any] | None) -> str | None:
    """Artifact location carried by a reply or callback body, if any."""
    if not body:
        return None
    return _first_string(body, _RESULT_REF_PATHS)


def extract_result_filename(body: dict[str, Any] | None) -> str | None:
    if not body:
        return None
    return _first_string(body, _RESULT_FILENAME_PATHS)


def _estimated_minutes(body: dict[str, Any]) -> int | None:
    value = body.get("estimated_time", body.get("estimatedTime"))
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_worker_reply(text: str) -> WorkerReply:
    """Classify a 2xx reply body.

    Empty or non-JSON bodies count as an implicit acceptance. A JSON object
    with ``success: false`` is a rejection.
    """
    if not text or not text.strip():
        return WorkerReply(accepted=True, body=dict(IMPLICIT_ACCEPTANCE))
    try:
        parsed = json.loads(text)
    except ValueError:
        return WorkerReply(
            accepted=True,
            body={**IMPLICIT_ACCEPTANCE, "raw": text.strip()[:500]},
        )
    if not isinstance(parsed, dict):
        return WorkerReply(accepted=True, body={**IMPLICIT_ACCEPTANCE, "raw": parsed})

    estimated = _estimated_minutes(parsed)
    if parsed.get("success") is False:
        message = parsed.get("error") or parsed.get("message") or "Worker rejected the batch"
        return WorkerReply(
            accepted=False,
            body=parsed,
            error_message=str(message),
            estimated_time_minutes=estimated,
        )
    return WorkerReply(
        accepted=True,
        body=parsed,
        estimated_time_minutes=estimated,
        result_ref=extract_result_ref(parsed),
        result_filename=extract_result_filename(parsed),
    )
