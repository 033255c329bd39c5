"""
Probe audit log.

Every probe outcome can be appended to a JSON Lines file so a run can be
inspected after the fact. Request headers are recorded with secret values
redacted.

Record format:
- ts: ISO-8601 UTC timestamp
- scenario: Scenario name
- endpoint: Endpoint expectation name
- method / url: Request line
- headers: Request headers, sensitive values replaced with [REDACTED]
- status_code: Response status, null on transport errors
- outcome: passed|failed|gap|expected_failure|unexpected_pass
- critical: Whether the endpoint was declared critical
- latency_ms: Probe latency in milliseconds
- problems: Reasons the endpoint fell short of its expectation
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

SENSITIVE_HEADER_MARKERS = ["authorization", "cookie", "token", "secret", "api-key", "apikey", "password"]


@dataclass
class ProbeAuditRecord:
    """One probe, as written to the audit log."""

    ts: str
    scenario: str
    endpoint: str
    method: str
    url: str
    headers: Dict[str, str]
    status_code: Optional[int]
    outcome: str
    critical: bool
    latency_ms: int
    problems: List[str] = field(default_factory=list)


class ProbeAuditLogger:
    """
    Appends probe outcomes to a JSON Lines file.

    Args:
        log_file_path: Path of the audit log; parent directories are created
    """

    def __init__(self, log_file_path: str):
        self.log_file_path = log_file_path
        self.sensitive_markers = self._get_sensitive_markers()

        log_dir = os.path.dirname(self.log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        logger.info(f"Probe audit log: {self.log_file_path}")

    def log_probe(self, scenario: str, outcome) -> None:
        """Record one ProbeOutcome."""
        expectation = outcome.expectation
        result = outcome.result
        request = result.request if result is not None else None

        record = ProbeAuditRecord(
            ts=datetime.now(UTC).isoformat(),
            scenario=scenario,
            endpoint=expectation.name,
            method=expectation.method,
            url=request.url if request is not None else expectation.url,
            headers=self.redact_headers(request.headers if request is not None else expectation.headers),
            status_code=result.status_code if result is not None else None,
            outcome=outcome.outcome.value,
            critical=expectation.critical,
            latency_ms=int(result.latency_ms) if result is not None else 0,
            problems=list(outcome.problems),
        )
        try:
            self._write_record(record)
        except OSError as e:
            # An unwritable audit log must not change probe outcomes
            logger.error(f"Failed to write audit record to {self.log_file_path}: {e}")

    def redact_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        redacted = {}
        for name, value in headers.items():
            if any(marker in name.lower() for marker in self.sensitive_markers):
                redacted[name] = "[REDACTED]"
            else:
                redacted[name] = value
        return redacted

    def _write_record(self, record: ProbeAuditRecord) -> None:
        json_line = json.dumps(asdict(record), separators=(",", ":"))
        with open(self.log_file_path, "a", encoding="utf-8") as f:
            f.write(json_line + "\n")

    def _get_sensitive_markers(self) -> List[str]:
        custom = os.environ.get("AUDIT_SENSITIVE_HEADERS", "").split(",")
        return SENSITIVE_HEADER_MARKERS + [m.strip().lower() for m in custom if m.strip()]

    def read_records(self) -> List[Dict[str, Any]]:
        """Parsed records; malformed lines are skipped."""
        if not os.path.exists(self.log_file_path):
            return []
        records = []
        with open(self.log_file_path, encoding="utf-8") as f:
            for line in f:
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed audit line in {self.log_file_path}")
        return records

    def get_audit_stats(self) -> Dict[str, Any]:
        """Counts per outcome and the endpoints seen."""
        stats: Dict[str, Any] = {"total_probes": 0, "outcomes": {}, "endpoints": set()}
        for record in self.read_records():
            stats["total_probes"] += 1
            outcome = record.get("outcome", "unknown")
            stats["outcomes"][outcome] = stats["outcomes"].get(outcome, 0) + 1
            stats["endpoints"].add(record.get("endpoint"))
        stats["endpoints"] = sorted(e for e in stats["endpoints"] if e)
        return stats


_audit_logger: Optional[ProbeAuditLogger] = None


def get_audit_logger(log_file_path: Optional[str] = None) -> ProbeAuditLogger:
    """
    Get the process-wide audit logger, creating it on first use.

    Args:
        log_file_path: Path used when the logger does not exist yet;
            defaults to AUDIT_LOG_PATH
    """
    global _audit_logger

    if _audit_logger is None:
        path = log_file_path or os.environ.get("AUDIT_LOG_PATH", "logs/probe-audit.jsonl")
        _audit_logger = ProbeAuditLogger(path)

    return _audit_logger
