"""Local deterministic agent for CLI backend integration tests and demos."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

BLOCK_MARKER = "[block]"
FAIL_MARKER = "[fail]"
_ANSWERS_HEADER = "## Answered questions"


def main(argv: list[str] | None = None) -> int:
    """Echo a structured response derived from the prompt file."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    phase = os.getenv("BACKLOG_PILOT_PHASE", "unknown")
    tokens = max(1, len(prompt) // 4)

    if FAIL_MARKER in prompt:
        sys.stderr.write("echo agent: simulated failure requested by prompt\n")
        return 1

    if BLOCK_MARKER in prompt and _ANSWERS_HEADER not in prompt:
        payload: dict[str, object] = {
            "outcome": "blocked",
            "summary": f"{phase}: waiting for clarification",
            "modified_files": [],
            "questions": ["Which behaviour is expected for this item?"],
        }
    else:
        payload = {
            "outcome": "completed",
            "summary": f"{phase}: done",
            "modified_files": [],
            "questions": [],
        }
    payload["tokens_used"] = tokens
    sys.stdout.write(json.dumps(payload) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
