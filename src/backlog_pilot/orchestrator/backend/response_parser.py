"""Best-effort recovery of a structured reasoning result from agent stdout."""

from __future__ import annotations

import json
import re

from backlog_pilot.orchestrator.models import ExecutionOutcome, FailureClass, ReasoningResult

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOKENS_USED = re.compile(r"tokens used\s*[:=]?\s*[\r\n ]*([\d,]+)", re.IGNORECASE)
_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(
    r"(?:output|completion)[_ ]tokens?\"?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)

_OUTCOME_ALIASES: dict[str, ExecutionOutcome] = {
    "completed": ExecutionOutcome.COMPLETED,
    "complete": ExecutionOutcome.COMPLETED,
    "done": ExecutionOutcome.COMPLETED,
    "blocked": ExecutionOutcome.BLOCKED,
    "needs_context": ExecutionOutcome.NEEDS_MORE_CONTEXT,
    "needs_more_context": ExecutionOutcome.NEEDS_MORE_CONTEXT,
    "failed": ExecutionOutcome.FAILED,
    "error": ExecutionOutcome.FAILED,
}


def parse_agent_response(*, stdout: str, stderr: str = "") -> ReasoningResult:
    """Turn agent output into a ``ReasoningResult``.

    Accepts a bare JSON object, a fenced json block, or the outermost ``{...}``
    span. Output with no recognisable payload becomes a failed result.
    """

    text = stdout.strip()
    payload = _parse_json_payload(text) if text else None
    if payload is None:
        return ReasoningResult(
            success=False,
            outcome=ExecutionOutcome.FAILED,
            error_message="output_invalid_json: agent output did not contain a JSON object.",
            tokens_used=extract_token_usage(stdout=stdout, stderr=stderr),
            failure_class=FailureClass.OUTPUT_INVALID_JSON,
        )

    # Claude's --output-format json wraps the model answer in "result".
    inner = payload.get("result")
    if "outcome" not in payload and isinstance(inner, str):
        nested = _parse_json_payload(inner.strip())
        if nested is not None:
            nested.setdefault("usage", payload.get("usage"))
            payload = nested

    tokens_used = _payload_tokens(payload) or extract_token_usage(stdout=stdout, stderr=stderr)
    raw_outcome = payload.get("outcome")
    outcome = _OUTCOME_ALIASES.get(str(raw_outcome).strip().lower()) if raw_outcome else None
    if outcome is None:
        return ReasoningResult(
            success=False,
            outcome=ExecutionOutcome.FAILED,
            summary=_optional_str(payload.get("summary")),
            error_message=f"output_invalid_json: unsupported outcome {raw_outcome!r}.",
            tokens_used=tokens_used,
            failure_class=FailureClass.OUTPUT_INVALID_JSON,
        )

    error_message = _optional_str(payload.get("error"))
    return ReasoningResult(
        success=outcome != ExecutionOutcome.FAILED,
        outcome=outcome,
        summary=_optional_str(payload.get("summary")),
        modified_files=_str_tuple(payload.get("modified_files")),
        questions=_str_tuple(payload.get("questions")),
        tokens_used=tokens_used,
        error_message=error_message,
    )


def extract_token_usage(*, stdout: str, stderr: str) -> int:
    """Token count from textual usage markers, 0 when none are present."""

    for text in (stderr, stdout):
        total = _extract_int(_TOTAL_TOKENS, text)
        if total is None:
            total = _extract_int(_TOKENS_USED, text)
        if total is not None:
            return total

    for text in (stderr, stdout):
        prompt = _extract_int(_INPUT_TOKENS, text)
        completion = _extract_int(_OUTPUT_TOKENS, text)
        if prompt is not None or completion is not None:
            return (prompt or 0) + (completion or 0)
    return 0


def _payload_tokens(payload: dict[str, object]) -> int:
    for key in ("tokens_used", "total_tokens"):
        value = payload.get(key)
        if isinstance(value, int) and value >= 0:
            return value
    usage = payload.get("usage")
    if isinstance(usage, dict):
        total = usage.get("total_tokens")
        if isinstance(total, int):
            return total
        parts = [
            usage.get(key)
            for key in ("input_tokens", "output_tokens", "prompt_tokens", "completion_tokens")
        ]
        return sum(part for part in parts if isinstance(part, int))
    return 0


def _parse_json_payload(text: str) -> dict[str, object] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _str_tuple(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
