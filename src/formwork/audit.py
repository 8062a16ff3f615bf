"""Decision log for formwork runs.

Every face decision is appended to a JSONL file whose entries are hash
chained, so a log can be checked for edits after the fact.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

# previous_hash of the first entry in every log.
CHAIN_ROOT = "0" * 64


def entry_digest(entry: Dict[str, object]) -> str:
    """SHA-256 of *entry* in sorted, compact JSON; the ``hash`` key is ignored."""
    body = {key: value for key, value in entry.items() if key != "hash"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sha256_file(path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class CheckpointHandle:
    stage: str
    path: Path
    payload_sha256: str


class AuditTrail:
    """Append-only decision writer with hash chaining."""

    def __init__(self, run_id: str, artifacts_dir: Path):
        self.run_id = run_id
        self.artifacts_dir = Path(artifacts_dir)
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self.decision_log_path = self.artifacts_dir / "decision_log.jsonl"
        self.hash_chain_path = self.artifacts_dir / "decision_hash_chain.json"
        self._sequence = 0
        self._prev_hash = CHAIN_ROOT
        self._chain: List[Dict[str, object]] = []
        self._checkpoints: List[CheckpointHandle] = []

    @property
    def decision_count(self) -> int:
        return self._sequence

    @property
    def checkpoints(self) -> List[CheckpointHandle]:
        return list(self._checkpoints)

    def append_decision(
        self,
        *,
        stage: str,
        element_id: str,
        face_index: Optional[int],
        selected: str,
        reason_codes: Iterable[str] = (),
        numeric_evidence: Optional[Dict[str, float]] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        """Record one decision (``stage`` is classify, synthesize or convert)."""
        self._sequence += 1
        payload: Dict[str, object] = {
            "schema_version": "formwork.decision.v1",
            "run_id": self.run_id,
            "seq": self._sequence,
            "timestamp_utc": _timestamp(),
            "stage": stage,
            "element_id": element_id,
            "face_index": face_index,
            "selected": selected,
            "reason_codes": list(reason_codes),
            "numeric_evidence": numeric_evidence or {},
            "metadata": metadata or {},
            "previous_hash": self._prev_hash,
        }
        digest = entry_digest(payload)
        payload["hash"] = digest

        with self.decision_log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True) + "\n")

        self._chain.append(
            {"seq": self._sequence, "hash": digest, "previous_hash": self._prev_hash}
        )
        self._prev_hash = digest
        return payload

    def write_checkpoint(
        self,
        *,
        stage: str,
        counts: Dict[str, int],
        metrics: Dict[str, float],
        notes: Optional[List[str]] = None,
    ) -> CheckpointHandle:
        path = self.artifacts_dir / f"checkpoint_{stage.lower().replace(' ', '_')}.json"
        payload: Dict[str, object] = {
            "schema_version": "formwork.checkpoint.v1",
            "run_id": self.run_id,
            "stage": stage,
            "timestamp_utc": _timestamp(),
            "counts": counts,
            "metrics": metrics,
            "notes": notes or [],
        }
        payload_sha = entry_digest(payload)
        payload["payload_sha256"] = payload_sha
        path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

        handle = CheckpointHandle(stage=stage, path=path, payload_sha256=payload_sha)
        self._checkpoints.append(handle)
        return handle

    def finalize(self) -> Path:
        """Write the chain summary beside the log and return its path.

        The summary holds the final hash and decision count, one link per
        decision and the payload hash of every checkpoint by stage.
        """
        summary = {
            "schema_version": "formwork.hash_chain.v1",
            "run_id": self.run_id,
            "decision_count": self._sequence,
            "final_hash": self._prev_hash,
            "entries": self._chain,
            "checkpoints": {c.stage: c.payload_sha256 for c in self._checkpoints},
        }
        self.hash_chain_path.write_text(
            json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8"
        )
        return self.hash_chain_path


def verify_chain(decision_log_path: Path) -> bool:
    """Recompute every hash in a decision log; False on any mismatch."""
    previous = CHAIN_ROOT
    lines = Path(decision_log_path).read_text(encoding="utf-8").splitlines()
    for entry in (json.loads(line) for line in lines if line.strip()):
        if entry.get("previous_hash") != previous or entry_digest(entry) != entry.get("hash"):
            return False
        previous = entry["hash"]
    return True
