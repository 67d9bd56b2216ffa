"""Run external CLI tools (docker, trivy, kubectl)."""

from __future__ import annotations

from collections.abc import Sequence
import logging
import subprocess

from deploygate.contracts.errors import TransientInfraError

logger = logging.getLogger(__name__)


def run_tool(
    cmd: Sequence[str],
    *,
    stdin: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``cmd`` and return the completed process without checking its exit code.

    A missing binary or a timeout is reported as TransientInfraError.
    """
    logger.debug("tool.run", extra={"extra": {"cmd": list(cmd)}})
    try:
        return subprocess.run(
            list(cmd),
            input=stdin,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise TransientInfraError(f"{cmd[0]} timed out after {timeout}s") from exc
    except OSError as exc:
        raise TransientInfraError(f"cannot run {cmd[0]}: {exc}") from exc


def tool_error(result: subprocess.CompletedProcess[str]) -> str:
    output = (result.stderr or result.stdout or "").strip()
    return output.splitlines()[-1] if output else f"exit status {result.returncode}"
