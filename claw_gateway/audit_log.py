"""Tamper-evident append-only audit log for the governance gateway.

Implements a segmented JSONL log where each record includes:
- previousHash: hash of the previous record in the same segment (null for the
  first record of a segment)
- hash: SHA256 over the canonical JSON of
  {type, timestamp, agentId, action, decision, previousHash}, where the
  `decision` slot carries the record's outcome payload (`decision`, or
  `result` for action and identity records)

Segments are named `audit-YYYY-MM-DD.jsonl`. When the active segment grows past
the rotation threshold it is renamed to `audit-YYYY-MM-DD.<epoch_ms>.jsonl` and
a fresh segment (and a fresh chain) starts. Lexical order of segment names is
chronological order.

Note: this detects after-the-fact edits of logged outcomes. It does not protect
against an attacker who can rewrite a whole segment and recompute every hash;
ship segments to a remote append-only store for that.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from .crypto import _now_utc, _parse_iso_utc, _sha256_hex, canonical_json_dumps
from .errors import CLAW_E_AUDIT_ENTRY_INVALID, CLAW_E_AUDIT_STORAGE, CLAW_E_BAD_REQUEST, governance_error
from . import metrics


logger = logging.getLogger("claw_gateway.audit")

# Entry types
ENTRY_POLICY_DECISION = "policy_decision"
ENTRY_AGENT_ACTION = "agent_action"
ENTRY_ESCALATION = "escalation"
ENTRY_ESCALATION_RESOLUTION = "escalation_resolution"
ENTRY_IDENTITY_VERIFICATION = "identity_verification"

ENTRY_TYPES = (
    ENTRY_POLICY_DECISION,
    ENTRY_AGENT_ACTION,
    ENTRY_ESCALATION,
    ENTRY_ESCALATION_RESOLUTION,
    ENTRY_IDENTITY_VERIFICATION,
)

SEGMENT_PREFIX = "audit-"
SEGMENT_SUFFIX = ".jsonl"
_SEGMENT_RE = re.compile(r"^audit-\d{4}-\d{2}-\d{2}(\.\d+)?\.jsonl$")

DEFAULT_ROTATION_SIZE_BYTES = 100 * 1024 * 1024

REDACTED = "[REDACTED]"
# Exact, case-sensitive top-level keys.
SENSITIVE_FIELDS = ("password", "token", "secret", "apiKey", "ssn", "creditCard")

TimeLike = Union[int, float, str, datetime]


def sanitize_context(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a shallow copy with denylisted keys replaced by the redaction marker."""
    if not context:
        return {}
    sanitized = dict(context)
    for key in SENSITIVE_FIELDS:
        if key in sanitized:
            sanitized[key] = REDACTED
    return sanitized


def _outcome_payload(entry: Mapping[str, Any]) -> Any:
    if "decision" in entry:
        return entry.get("decision")
    return entry.get("result")


def compute_entry_hash(entry: Mapping[str, Any]) -> str:
    """Hash the canonical subset of an entry (never includes `hash` itself)."""
    subset = {
        "type": entry.get("type"),
        "timestamp": entry.get("timestamp"),
        "agentId": entry.get("agentId"),
        "action": entry.get("action"),
        "decision": _outcome_payload(entry),
        "previousHash": entry.get("previousHash"),
    }
    return _sha256_hex(canonical_json_dumps(subset).encode("utf-8"))


def _to_epoch_ms(value: TimeLike, *, field: str) -> int:
    if isinstance(value, bool):
        raise governance_error(CLAW_E_BAD_REQUEST, f"{field} must be a timestamp", field=field)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    dt = _parse_iso_utc(str(value))
    if dt is None:
        raise governance_error(CLAW_E_BAD_REQUEST, f"{field} is not an ISO-8601 timestamp: {value!r}", field=field)
    return int(dt.timestamp() * 1000)


@dataclass
class ChainVerification:
    """Result of replaying one segment's hash chain."""

    valid: bool
    segment: Optional[str] = None
    entries: int = 0
    error: Optional[str] = None
    broken_at_index: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"valid": self.valid, "segment": self.segment, "entries": self.entries}
        if not self.valid:
            d["error"] = self.error
            d["brokenAtIndex"] = self.broken_at_index
        return d


class AuditLog:
    """Append-only, hash-chained, segmented audit log."""

    def __init__(
        self,
        log_dir: Union[str, Path],
        *,
        rotation_size_bytes: int = DEFAULT_ROTATION_SIZE_BYTES,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.log_dir = Path(log_dir)
        self.rotation_size_bytes = int(rotation_size_bytes)
        self._clock = clock
        # Guards segment selection, rotation and the last_hash read-modify-write.
        self._lock = threading.Lock()

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._current = self._segment_path(self._clock())
        self._last_hash: Optional[str] = self._load_last_hash(self._current)
        logger.info("Audit log initialized: %s", self._current)

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    @property
    def current_segment(self) -> Path:
        return self._current

    @property
    def last_hash(self) -> Optional[str]:
        return self._last_hash

    def _segment_path(self, now: datetime) -> Path:
        return self.log_dir / f"{SEGMENT_PREFIX}{now.date().isoformat()}{SEGMENT_SUFFIX}"

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            # Read backwards in chunks until a full line is available
            pos = end
            chunk = b""
            while pos > 0:
                step = min(4096, pos)
                pos -= step
                f.seek(pos)
                chunk = f.read(step) + chunk
                lines = chunk.strip().splitlines()
                if len(lines) > 1 or (pos == 0 and lines):
                    return lines[-1].decode("utf-8")
            return ""

    def _load_last_hash(self, path: Path) -> Optional[str]:
        if not path.exists() or path.stat().st_size == 0:
            return None
        try:
            rec = json.loads(self._read_last_line(path))
            return rec.get("hash")
        except (OSError, ValueError, AttributeError) as e:
            # Chain restarts at genesis; verify_chain will flag the corrupt tail.
            logger.warning("Could not read last hash from %s: %s", path, e)
            return None

    def _roll_segment_if_needed(self, now: datetime) -> None:
        target = self._segment_path(now)
        if target != self._current:
            self._current = target
            self._last_hash = self._load_last_hash(target)
            logger.info("Audit log switched to new segment: %s", target)

        if self._should_rotate():
            self._rotate(now)

    def _should_rotate(self) -> bool:
        try:
            return self._current.stat().st_size > self.rotation_size_bytes
        except FileNotFoundError:
            return False

    def _rotate(self, now: datetime) -> None:
        stamp = int(now.timestamp() * 1000)
        rotated = self._current.with_name(self._current.name[: -len(SEGMENT_SUFFIX)] + f".{stamp}{SEGMENT_SUFFIX}")
        while rotated.exists():
            stamp += 1
            rotated = self._current.with_name(self._current.name[: -len(SEGMENT_SUFFIX)] + f".{stamp}{SEGMENT_SUFFIX}")
        self._current.rename(rotated)
        self._last_hash = None
        metrics.record_audit_rotation()
        logger.info("Rotated audit log: %s", rotated)

    def list_segments(self) -> List[Path]:
        """All segments (rotated and active) in chronological order."""
        if not self.log_dir.is_dir():
            raise governance_error(
                CLAW_E_AUDIT_STORAGE,
                f"Audit log directory not found: {self.log_dir}",
                http_status=500,
                path=str(self.log_dir),
            )
        return sorted(p for p in self.log_dir.iterdir() if p.is_file() and _SEGMENT_RE.match(p.name))

    def _resolve_segment(self, segment: Optional[Union[str, Path]]) -> Path:
        if segment is None:
            return self._current
        p = Path(segment)
        if not p.is_absolute() and not p.exists():
            p = self.log_dir / p
        return p

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(self, entry: Mapping[str, Any]) -> Dict[str, Any]:
        """Sanitize, chain and append one entry. Returns the persisted entry."""
        if entry.get("type") not in ENTRY_TYPES:
            raise governance_error(CLAW_E_AUDIT_ENTRY_INVALID, f"Unknown audit entry type: {entry.get('type')!r}")

        rec: Dict[str, Any] = dict(entry)
        for key in ("context", "details"):
            if key in rec:
                rec[key] = sanitize_context(rec[key])
        # Normalize to plain JSON so the stored line re-hashes identically.
        rec = json.loads(json.dumps(rec, ensure_ascii=False, default=str))

        with self._lock:
            # Clock is read under the lock so timestamps follow chain order.
            now = self._clock()
            rec.setdefault("timestamp", now.isoformat())
            rec.setdefault("timestampUnix", int(now.timestamp() * 1000))
            self._roll_segment_if_needed(now)
            rec["previousHash"] = self._last_hash
            rec["hash"] = compute_entry_hash(rec)
            line = json.dumps(rec, ensure_ascii=False) + "\n"
            with open(self._current, "a", encoding="utf-8") as f:
                f.write(line)
            self._last_hash = rec["hash"]

        return rec

    def log_decision(
        self,
        agent_id: str,
        action: str,
        context: Optional[Mapping[str, Any]],
        decision: Mapping[str, Any],
        duration_ms: float,
    ) -> Dict[str, Any]:
        return self.record(
            {
                "type": ENTRY_POLICY_DECISION,
                "agentId": agent_id,
                "action": action,
                "context": context or {},
                "decision": {
                    "allowed": bool(decision.get("allowed")),
                    "reason": decision.get("reason"),
                    "requiresEscalation": bool(decision.get("requiresEscalation")),
                    "escalationRule": decision.get("escalationRule"),
                },
                "durationMs": duration_ms,
            }
        )

    def log_action(
        self,
        agent_id: str,
        action: str,
        details: Optional[Mapping[str, Any]],
        result: Mapping[str, Any],
    ) -> Dict[str, Any]:
        return self.record(
            {
                "type": ENTRY_AGENT_ACTION,
                "agentId": agent_id,
                "action": action,
                "details": details or {},
                "result": {
                    "success": bool(result.get("success")),
                    "output": result.get("output"),
                    "error": result.get("error"),
                },
            }
        )

    def log_escalation(
        self,
        agent_id: str,
        action: str,
        context: Optional[Mapping[str, Any]],
        reason: str,
        assigned_to: str,
        escalation_rule: Any = None,
    ) -> str:
        """Record a pending escalation and return its opaque id."""
        escalation_id = f"esc_{uuid.uuid4().hex}"
        self.record(
            {
                "type": ENTRY_ESCALATION,
                "agentId": agent_id,
                "action": action,
                "context": context or {},
                "decision": {
                    "escalationId": escalation_id,
                    "reason": reason,
                    "assignedTo": assigned_to,
                    "status": "pending",
                    "escalationRule": escalation_rule,
                },
            }
        )
        return escalation_id

    def log_escalation_resolution(
        self,
        escalation_id: str,
        resolved_by: str,
        decision: str,
        notes: Optional[str] = None,
        *,
        agent_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.record(
            {
                "type": ENTRY_ESCALATION_RESOLUTION,
                "agentId": agent_id,
                "action": action,
                "decision": {
                    "escalationId": escalation_id,
                    "resolution": decision,
                    "resolvedBy": resolved_by,
                    "notes": notes,
                },
            }
        )

    def log_identity_verification(
        self,
        agent_id: str,
        verification_type: str,
        result: Mapping[str, Any],
    ) -> Dict[str, Any]:
        return self.record(
            {
                "type": ENTRY_IDENTITY_VERIFICATION,
                "agentId": agent_id,
                "action": None,
                "result": {
                    "method": verification_type,
                    "verified": bool(result.get("verified")),
                    "reason": result.get("reason"),
                    "trustScore": result.get("trustScore"),
                },
            }
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self, segment: Optional[Union[str, Path]] = None) -> ChainVerification:
        """Replay a segment (default: the active one) and check every link."""
        p = self._resolve_segment(segment)
        if not p.exists():
            return ChainVerification(valid=False, segment=str(p), error=f"Log segment not found: {p}")

        try:
            with self._lock:
                with p.open("r", encoding="utf-8") as f:
                    lines = [line for line in f.read().splitlines() if line.strip()]
        except (OSError, UnicodeDecodeError) as e:
            return ChainVerification(valid=False, segment=str(p), error=f"Log segment unreadable: {e}")

        result = self._verify_lines(lines, segment=str(p))
        metrics.record_chain_verification(result.valid)
        if not result.valid:
            logger.warning("Audit chain verification failed for %s: %s", p, result.error)
        return result

    @staticmethod
    def _verify_lines(lines: List[str], *, segment: str) -> ChainVerification:
        previous_hash: Optional[str] = None
        for i, line in enumerate(lines):
            try:
                entry = json.loads(line)
            except ValueError as e:
                return ChainVerification(
                    valid=False, segment=segment, entries=i, broken_at_index=i,
                    error=f"Invalid JSON at entry {i}: {e}",
                )
            if not isinstance(entry, dict):
                return ChainVerification(
                    valid=False, segment=segment, entries=i, broken_at_index=i,
                    error=f"Entry {i} is not a JSON object",
                )

            if entry.get("previousHash") != previous_hash:
                return ChainVerification(
                    valid=False, segment=segment, entries=i, broken_at_index=i,
                    error=f"Hash chain broken at entry {i}",
                )

            if entry.get("hash") != compute_entry_hash(entry):
                return ChainVerification(
                    valid=False, segment=segment, entries=i, broken_at_index=i,
                    error=f"Entry hash mismatch at entry {i}",
                )

            previous_hash = entry.get("hash")

        return ChainVerification(valid=True, segment=segment, entries=len(lines))

    def verify_all(self) -> List[ChainVerification]:
        """Verify every segment independently (chains reset per segment)."""
        return [self.verify_chain(p) for p in self.list_segments()]

    # ------------------------------------------------------------------
    # Query / reporting
    # ------------------------------------------------------------------

    def _iter_entries(self) -> Iterator[Dict[str, Any]]:
        for path in self.list_segments():
            try:
                with path.open("r", encoding="utf-8") as f:
                    lines = f.read().splitlines()
            except (OSError, UnicodeDecodeError) as e:
                raise governance_error(
                    CLAW_E_AUDIT_STORAGE,
                    f"Audit log segment unreadable: {path}: {e}",
                    http_status=500,
                    path=str(path),
                ) from e

            for lineno, line in enumerate(lines, start=1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.warning("Skipping malformed audit line %s:%d", path.name, lineno)
                    continue
                if isinstance(entry, dict):
                    yield entry

    def query(
        self,
        *,
        agent_id: Optional[str] = None,
        entry_type: Optional[str] = None,
        action: Optional[str] = None,
        start_time: Optional[TimeLike] = None,
        end_time: Optional[TimeLike] = None,
        allowed: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """Scan every segment in chronological order and return matching entries.

        The time range is inclusive on both ends and compares `timestampUnix`.
        """
        start_ms = _to_epoch_ms(start_time, field="start_time") if start_time is not None else None
        end_ms = _to_epoch_ms(end_time, field="end_time") if end_time is not None else None

        results: List[Dict[str, Any]] = []
        for entry in self._iter_entries():
            if agent_id is not None and entry.get("agentId") != agent_id:
                continue
            if entry_type is not None and entry.get("type") != entry_type:
                continue
            if action is not None and entry.get("action") != action:
                continue
            ts = entry.get("timestampUnix")
            if start_ms is not None and (not isinstance(ts, (int, float)) or ts < start_ms):
                continue
            if end_ms is not None and (not isinstance(ts, (int, float)) or ts > end_ms):
                continue
            if allowed is not None:
                decision = entry.get("decision")
                if not isinstance(decision, dict) or decision.get("allowed") is not allowed:
                    continue
            results.append(entry)
        return results

    def find_escalation(self, escalation_id: str) -> Optional[Dict[str, Any]]:
        for entry in self.query(entry_type=ENTRY_ESCALATION):
            decision = entry.get("decision") or {}
            if decision.get("escalationId") == escalation_id:
                return entry
        return None

    def generate_compliance_report(self, start_date: TimeLike, end_date: TimeLike) -> Dict[str, Any]:
        """Aggregate decisions, actions and escalations inside [start_date, end_date]."""
        entries = self.query(start_time=start_date, end_time=end_date)

        def _period(v: TimeLike) -> Any:
            return v.isoformat() if isinstance(v, datetime) else v

        report: Dict[str, Any] = {
            "period": {"startDate": _period(start_date), "endDate": _period(end_date)},
            "summary": {
                "totalDecisions": 0,
                "allowed": 0,
                "denied": 0,
                "escalations": 0,
                "actions": 0,
            },
            "byAgent": {},
            "byAction": {},
            "escalations": [],
        }
        summary = report["summary"]

        for entry in entries:
            etype = entry.get("type")
            if etype == ENTRY_POLICY_DECISION:
                decision = entry.get("decision") or {}
                agent = entry.get("agentId")
                per_agent = report["byAgent"].setdefault(agent, {"allowed": 0, "denied": 0, "escalations": 0})

                summary["totalDecisions"] += 1
                if decision.get("allowed"):
                    summary["allowed"] += 1
                    per_agent["allowed"] += 1
                else:
                    summary["denied"] += 1
                    per_agent["denied"] += 1
                if decision.get("requiresEscalation"):
                    summary["escalations"] += 1
                    per_agent["escalations"] += 1

                act = entry.get("action")
                report["byAction"][act] = report["byAction"].get(act, 0) + 1

            elif etype == ENTRY_AGENT_ACTION:
                summary["actions"] += 1

            elif etype == ENTRY_ESCALATION:
                decision = entry.get("decision") or {}
                report["escalations"].append(
                    {
                        "timestamp": entry.get("timestamp"),
                        "agentId": entry.get("agentId"),
                        "action": entry.get("action"),
                        "reason": decision.get("reason"),
                        "escalationId": decision.get("escalationId"),
                    }
                )

        return report
