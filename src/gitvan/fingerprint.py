# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Content-addressed fingerprints.

All hashes are SHA-256 over canonical JSON (sorted keys, no whitespace), so
equal inputs yield equal fingerprints in every process.
"""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(data: Any) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_object(value: Any) -> str:
    return sha256_hex(canonical_json(value))


def payload_hash(payload: Any) -> str:
    """Hash of an on-demand payload; an empty payload hashes like {}."""
    return hash_object(payload or {})


def compute_fingerprint(job_id: str, job_version: str, trigger: dict) -> str:
    """Fingerprint for one (job, version, trigger) execution."""
    return hash_object({"jobId": job_id, "jobVersion": job_version, "trigger": trigger})
