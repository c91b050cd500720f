"""
Diagnostic dump formatter.

The dump is the audit record of one execution attempt that is shown to
operators in the rule execution history. It always includes the outbound
body, even when the call never completed.
"""

from typing import Iterable, Mapping, Optional

REDACTED = "***REDACTED***"


def format_elapsed(seconds: float) -> str:
    """Format a duration as ``HH:MM:SS.ffffff``."""
    micros = int(round(max(seconds, 0.0) * 1_000_000))
    hours, micros = divmod(micros, 3_600_000_000)
    minutes, micros = divmod(micros, 60_000_000)
    secs, micros = divmod(micros, 1_000_000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{micros:06d}"


def build_dump(
    method: str,
    target: str,
    request_body: Optional[str],
    response_body: Optional[str],
    elapsed_seconds: float,
    request_headers: Optional[Mapping[str, str]] = None,
    response_status: Optional[int] = None,
    response_reason: Optional[str] = None,
    response_headers: Optional[Mapping[str, str]] = None,
    is_timeout: bool = False,
    secrets: Iterable[Optional[str]] = (),
) -> str:
    """
    Build a plain-text request/response record.

    Args:
        method: Outbound method, e.g. "POST" or "DELETE"
        target: Target URL or resource identifier
        request_body: Outbound body
        response_body: Inbound body, or the exception text when no response arrived
        elapsed_seconds: Measured duration of the attempt
        request_headers: Outbound headers worth recording
        response_status: Inbound status code, if a response arrived
        response_reason: Inbound reason phrase
        response_headers: Inbound headers, if a response arrived
        is_timeout: Whether the attempt ended because of a timeout
        secrets: Values that must never appear in the dump (longer than 3 characters)

    Returns:
        Dump text
    """
    lines = ["Request:", f"{method.upper()}: {target}"]

    for name, value in (request_headers or {}).items():
        lines.append(f"{name}: {value}")

    lines.extend(["", request_body or "", "", "", "Response:"])

    if response_status is not None:
        lines.append(f"{response_status} {response_reason or ''}".rstrip())
        for name, value in (response_headers or {}).items():
            lines.append(f"{name}: {value}")
        lines.append("")

    lines.extend(
        [
            response_body or "",
            "",
            "",
            f"Elapsed: {format_elapsed(elapsed_seconds)}",
            f"Timeout: {is_timeout}",
        ]
    )

    dump = "\n".join(lines)

    for secret in secrets:
        # Same minimum length as SecretRedactionFilter.
        if secret and len(secret) > 3:
            dump = dump.replace(secret, REDACTED)

    return dump
