"""Trivy vulnerability scanner adapter and JSON report parser."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any

from deploygate.collaborators.process import run_tool, tool_error
from deploygate.contracts.errors import TransientInfraError
from deploygate.contracts.models import ArtifactReference, ScanFinding
from deploygate.contracts.types import Severity

logger = logging.getLogger(__name__)


def parse_trivy_report(output: str) -> list[ScanFinding]:
    """Parse ``trivy image --format json`` output into findings.

    Findings keep report order. A vulnerability listed under several targets
    is reported once per package.

    Raises:
        ValueError: If the output is not a Trivy JSON report.
    """
    try:
        data: Any = json.loads(output)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid Trivy JSON: {exc}") from exc
    if not isinstance(data, dict) or "Results" not in data:
        raise ValueError("missing 'Results' key in Trivy output")

    findings: list[ScanFinding] = []
    seen: set[tuple[str, str | None]] = set()
    for result in data.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            finding = ScanFinding(
                finding_id=vuln.get("VulnerabilityID", "UNKNOWN"),
                severity=Severity.parse(vuln.get("Severity")),
                package=vuln.get("PkgName"),
                fixed_version=vuln.get("FixedVersion") or None,
            )
            key = (finding.finding_id, finding.package)
            if key in seen:
                continue
            seen.add(key)
            findings.append(finding)
    return findings


@dataclass(slots=True)
class TrivyScanner:
    """Scans a digest-pinned image with the ``trivy`` CLI."""

    trivy_bin: str = "trivy"
    timeout: float = 600.0

    def scan(self, artifact: ArtifactReference) -> list[ScanFinding]:
        result = run_tool(
            [self.trivy_bin, "image", "--format", "json", "--quiet", artifact.pinned],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise TransientInfraError(
                f"trivy scan of {artifact.pinned} failed: {tool_error(result)}"
            )
        try:
            findings = parse_trivy_report(result.stdout)
        except ValueError as exc:
            raise TransientInfraError(str(exc)) from exc
        logger.info(
            "scan.completed",
            extra={"extra": {"artifact": artifact.pinned, "findings": len(findings)}},
        )
        return findings


@dataclass(slots=True)
class TrivyReportScanner:
    """Reads a Trivy report produced earlier in CI instead of scanning."""

    path: Path

    def scan(self, artifact: ArtifactReference) -> list[ScanFinding]:
        try:
            return parse_trivy_report(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise TransientInfraError(f"cannot read scan report {self.path}: {exc}") from exc
