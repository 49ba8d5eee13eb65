"""Tamper-evident audit logging for credential lifecycle events.

Each line of the log is a JSON object chained to its predecessor through a
sha256 hash, so a removed or edited line breaks ``AuditLogger.verify``. Token
material never enters an event; credential keys are recorded as hashes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Dict, Iterable, Optional

from filelock import FileLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """Represents a structured audit event."""

    job_id: str
    source: str
    action: str
    status: str
    timestamp: datetime
    operator_action: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "job_id": self.job_id,
            "source": self.source,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.operator_action:
            payload["operator_action"] = self.operator_action
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass
class AuditLogger:
    """Writes append-only, hash-chained audit logs.

    Attributes:
        output_dir: Directory for audit log files
        filename: Name of the audit log file
        manifest_name: Name of the manifest file tracking the chain head
    """

    output_dir: Path
    filename: str = "audit.log"
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        self._lock = FileLock(str(self._path.with_suffix(".lock")))
        if not self._manifest_path.exists():
            self._save_manifest({"last_hash": None})

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            payload = self._augment_with_chain(event.to_payload())
            with self._path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(payload, separators=(",", ":")) + "\n")

    def verify(self) -> bool:
        """Verify the integrity of the audit log chain.

        Returns:
            True if chain is valid, False if tampered
        """
        previous_hash = None
        for entry in self.iter_events():
            if entry.get("chain_prev") != previous_hash:
                return False
            current_hash = entry.get("chain_hash")
            if current_hash != _compute_chain_hash(entry):
                return False
            previous_hash = current_hash
        return True

    def iter_events(self) -> Iterable[Dict[str, object]]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Failed to parse audit line as JSON")

    def _augment_with_chain(self, payload: Dict[str, object]) -> Dict[str, object]:
        manifest = self._load_manifest()
        augmented = dict(payload)
        augmented["chain_prev"] = manifest.get("last_hash")
        augmented["chain_hash"] = _compute_chain_hash(augmented)
        manifest["last_hash"] = augmented["chain_hash"]
        self._save_manifest(manifest)
        return augmented

    def _load_manifest(self) -> Dict[str, object]:
        return json.loads(self._manifest_path.read_text())

    def _save_manifest(self, manifest: Dict[str, object]) -> None:
        self._manifest_path.write_text(json.dumps(manifest, indent=2))


def credential_key_hash(user_id: str, provider: str) -> str:
    """Stable, non-reversible identifier for a credential record."""
    return sha256(f"{user_id}:{provider}".encode("utf-8")).hexdigest()[:16]


def emit_credential_event(
    audit_logger: Optional[AuditLogger],
    *,
    action: str,
    status: str,
    user_id: str,
    provider: str,
    metadata: Optional[Dict[str, object]] = None,
    operator: Optional[str] = None,
) -> None:
    """Record a credential lifecycle event if an audit logger is configured.

    Audit failures are logged and never interrupt the credential operation.
    """
    if audit_logger is None:
        return

    key_hash = credential_key_hash(user_id, provider)
    event = AuditEvent(
        job_id=f"github_credential_{action}_{key_hash}",
        source="github_credentials",
        action=action,
        status=status,
        timestamp=datetime.now(timezone.utc),
        operator_action=operator,
        metadata={"credential_key_hash": key_hash, "provider": provider, **(metadata or {})},
    )
    try:
        audit_logger.record(event)
    except OSError as exc:
        logger.warning(f"Failed to record audit event {action}: {exc}")


def _compute_chain_hash(payload: Dict[str, object]) -> str:
    canonical = json.dumps(
        {k: payload[k] for k in sorted(payload) if k != "chain_hash"},
        separators=(",", ":"),
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


__all__ = [
    "AuditEvent",
    "AuditLogger",
    "credential_key_hash",
    "emit_credential_event",
]
