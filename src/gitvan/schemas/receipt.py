# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Receipt and trigger schemas.

Receipts are written one JSON object per line into a git note:

    {"receiptVersion":1,"jobId":"...","fingerprint":"<hex>","status":"success|error",
     "artifacts":[...],"duration":<ms>,"timestamp":"<ISO-8601 UTC>","metadata":{...},
     "error":"<optional>"}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gitvan.fingerprint import canonical_json

RECEIPT_VERSION = 1
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass
class Trigger:
    """What caused a run. Serialized shape feeds the fingerprint."""
    kind: str  # cron | event | on-demand
    minute_utc: Optional[str] = None
    commit: Optional[str] = None
    matcher_key: Optional[str] = None
    payload_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == "cron":
            return {"kind": "cron", "minuteUTC": self.minute_utc}
        if self.kind == "event":
            return {"kind": "event", "commit": self.commit, "matcherKey": self.matcher_key}
        return {"kind": "on-demand", "payloadHash": self.payload_hash}


@dataclass
class Receipt:
    """Audit record of one execution outcome."""
    job_id: str
    fingerprint: str
    status: str
    timestamp: str
    artifacts: List[str] = field(default_factory=list)
    duration: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    commit: Optional[str] = None  # commit the note is attached to; not serialized

    @property
    def key(self) -> tuple:
        return (self.job_id, self.fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "receiptVersion": RECEIPT_VERSION,
            "jobId": self.job_id,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "artifacts": list(self.artifacts),
            "duration": self.duration,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    def to_line(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any], commit: Optional[str] = None) -> "Receipt":
        return cls(
            job_id=data["jobId"],
            fingerprint=data["fingerprint"],
            status=data["status"],
            timestamp=data.get("timestamp", ""),
            artifacts=list(data.get("artifacts") or []),
            duration=int(data.get("duration") or 0),
            metadata=dict(data.get("metadata") or {}),
            error=data.get("error"),
            commit=commit,
        )


def parse_note(content: str, commit: Optional[str] = None) -> List[Receipt]:
    """Parse a receipts note; lines that are not receipts are ignored."""
    receipts = []
    for line in content.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or "jobId" not in data or "fingerprint" not in data:
            continue
        receipts.append(Receipt.from_dict(data, commit=commit))
    return receipts
