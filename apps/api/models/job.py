"""Queued download job record."""

from __future__ import annotations

import hashlib
import json
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from services.errors import JobValidationError


class Job(BaseModel):
    """One media URL queued on behalf of one chat user."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = Field(min_length=1)
    requester_id: str = Field(min_length=1, alias="user_id")

    def to_wire(self) -> dict:
        return {"url": self.url, "user_id": self.requester_id}

    def to_payload(self) -> bytes:
        """Canonical UTF-8 JSON body published to the queue."""
        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @property
    def fingerprint(self) -> str:
        """SHA-256 of the canonical payload; keys the attempt counter."""
        return hashlib.sha256(self.to_payload()).hexdigest()

    @classmethod
    def from_payload(cls, payload: Union[bytes, str]) -> "Job":
        """Decode a queue body, rejecting anything that is not a job object."""
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise JobValidationError(cause=f"payload is not UTF-8 JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise JobValidationError(cause="payload is not a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise JobValidationError(cause=str(exc)) from exc
