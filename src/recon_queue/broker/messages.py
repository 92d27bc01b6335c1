"""Wire contracts for job, authoritative status and verbose status messages."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from recon_queue.models import HEARTBEAT_PROJECT_ID, StatusKind
from recon_queue.storage.common import from_iso, to_iso, utc_now


class MessageDecodeError(ValueError):
    """Raised when a payload does not match its wire schema."""


@dataclass(slots=True, frozen=True)
class JobMessage:
    """Work-queue payload: one per uploaded project."""

    project_id: int

    def to_json(self) -> str:
        return json.dumps({"ProjectId": self.project_id})

    @classmethod
    def from_json(cls, raw: bytes | str) -> JobMessage:
        payload = _load_object(raw)
        return cls(project_id=_require_int(payload, "ProjectId"))


@dataclass(slots=True, frozen=True)
class StatusUpdateMessage:
    """Authoritative status transition applied to the persisted record."""

    project_id: int
    status: StatusKind
    timestamp: datetime
    error_message: str | None = None
    output_model_path: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "ProjectId": self.project_id,
                "Status": self.status.value,
                "ErrorMessage": self.error_message,
                "OutputModelPath": self.output_model_path,
                "Timestamp": to_iso(self.timestamp),
            },
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> StatusUpdateMessage:
        """Decode a status update.

        Unknown status strings are rejected here; the consumer decides whether
        that means drop or retry.
        """

        payload = _load_object(raw)
        status_raw = payload.get("Status")
        if not isinstance(status_raw, str):
            raise MessageDecodeError("Status must be a string.")
        try:
            status = StatusKind(status_raw)
        except ValueError as error:
            raise UnknownStatusError(status_raw) from error
        return cls(
            project_id=_require_int(payload, "ProjectId"),
            status=status,
            timestamp=_parse_timestamp(payload.get("Timestamp")),
            error_message=_optional_str(payload, "ErrorMessage"),
            output_model_path=_optional_str(payload, "OutputModelPath"),
        )


class UnknownStatusError(MessageDecodeError):
    """Well-formed status message carrying a status this consumer does not know."""

    def __init__(self, status: str) -> None:
        super().__init__(f"Unknown status: {status!r}")
        self.status = status


@dataclass(slots=True, frozen=True)
class VerboseStatusMessage:
    """Best-effort progress event for live observability."""

    project_id: int
    status: str
    worker_id: str
    timestamp: datetime
    current_step: str | None = None
    message: str | None = None
    image_count: int | None = None

    @property
    def is_heartbeat(self) -> bool:
        return self.project_id == HEARTBEAT_PROJECT_ID

    def to_json(self) -> str:
        return json.dumps(
            {
                "ProjectId": self.project_id,
                "Status": self.status,
                "WorkerId": self.worker_id,
                "CurrentStep": self.current_step,
                "Message": self.message,
                "ImageCount": self.image_count,
                "Timestamp": to_iso(self.timestamp),
            },
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> VerboseStatusMessage:
        payload = _load_object(raw)
        status = payload.get("Status")
        if not isinstance(status, str) or not status:
            raise MessageDecodeError("Status must be a non-empty string.")
        worker_id = payload.get("WorkerId")
        if worker_id is not None and not isinstance(worker_id, str):
            raise MessageDecodeError("WorkerId must be a string.")
        image_count = payload.get("ImageCount")
        if image_count is not None and (
            isinstance(image_count, bool) or not isinstance(image_count, int)
        ):
            raise MessageDecodeError("ImageCount must be an integer or null.")
        return cls(
            project_id=_require_int(payload, "ProjectId"),
            status=status,
            worker_id=worker_id or "",
            timestamp=_parse_timestamp(payload.get("Timestamp")),
            current_step=_optional_str(payload, "CurrentStep"),
            message=_optional_str(payload, "Message"),
            image_count=image_count,
        )


def _load_object(raw: bytes | str) -> dict[str, Any]:
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes | bytearray) else raw
        payload = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise MessageDecodeError(f"Invalid JSON payload: {error}") from error
    if not isinstance(payload, dict):
        raise MessageDecodeError("Expected a JSON object payload.")
    return payload


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MessageDecodeError(f"{key} must be an integer.")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MessageDecodeError(f"{key} must be a string or null.")
    return value


def _parse_timestamp(value: object) -> datetime:
    if value is None:
        return utc_now()
    if not isinstance(value, str):
        raise MessageDecodeError("Timestamp must be an ISO-8601 string.")
    try:
        return from_iso(value)
    except ValueError as error:
        raise MessageDecodeError(f"Invalid Timestamp: {value!r}") from error
