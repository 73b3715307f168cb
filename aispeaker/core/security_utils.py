"""
Security utilities for AI Speaker.
- Safe subprocess execution (argument arrays only, always bounded)
- Secret masking for log output
"""

import subprocess
import logging

logger = logging.getLogger(__name__)


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False: remove any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


# ── Secrets ───────────────────────────────────────────────────────────

def mask_secret(value: str | None) -> str:
    """Render an API key for logs: last 4 characters only."""
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "****"
    return f"****{value[-4:]}"
