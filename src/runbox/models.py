"""Typed models for execution requests and results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, TypedDict


class RunRequest(TypedDict, total=False):
    language: str
    code: str


class RunResponse(TypedDict, total=False):
    success: bool
    stdout: str
    stderr: str
    exitCode: int | None
    timedOut: bool
    message: str
    error: str


@dataclass(frozen=True)
class ExecutionRequest:
    language: str
    source: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "ExecutionRequest":
        """Build a request from the wire shape ``{language, code}``."""
        data = payload if isinstance(payload, Mapping) else {}
        language = data.get("language")
        source = data.get("code")
        return cls(
            language=_language_text(language),
            source=source if isinstance(source, str) else "",
        )


def _language_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    # Numbers are echoed back in the unsupported-language message.
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
        return str(value)
    return ""


@dataclass(frozen=True)
class ExecutionResult:
    stdout: bytes
    stderr: bytes
    exit_code: int | None
    timed_out: bool
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: int = 0

    def to_response(self) -> RunResponse:
        return {
            "success": True,
            "stdout": self.stdout.decode("utf-8", errors="replace"),
            "stderr": self.stderr.decode("utf-8", errors="replace"),
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
        }
