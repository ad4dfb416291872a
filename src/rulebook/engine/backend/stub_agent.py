"""Scripted stand-in for a CLI coding agent.

The script is a JSON document::

    {"runs": [{"lines": ["..."], "partial": "", "stderr": "", "exit_code": 0, "sleep": 0}]}

Each invocation plays the next entry (the last one repeats) and appends the
prompt it received to ``<script>.prompts.jsonl``.  ``partial`` is written
after the lines without a trailing newline.
"""

from __future__ import annotations

import argparse
import fcntl
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Play one scripted run."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--script", required=True)
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    script_path = Path(args.script)
    script = json.loads(script_path.read_text("utf-8"))
    runs = script.get("runs") or [{}]
    index = _next_invocation(script_path, prompt=args.prompt)
    run = runs[min(index, len(runs) - 1)]

    for line in run.get("lines", []):
        sys.stdout.buffer.write(f"{line}\n".encode("utf-8"))
        sys.stdout.buffer.flush()
    partial = run.get("partial")
    if partial:
        sys.stdout.buffer.write(partial.encode("utf-8"))
        sys.stdout.buffer.flush()
    stderr = run.get("stderr")
    if stderr:
        sys.stderr.buffer.write(f"{stderr}\n".encode("utf-8"))
        sys.stderr.buffer.flush()
    sleep_seconds = float(run.get("sleep", 0))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)
    return int(run.get("exit_code", 0))


def _next_invocation(script_path: Path, *, prompt: str) -> int:
    prompts_path = script_path.with_name(f"{script_path.name}.prompts.jsonl")
    with prompts_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        handle.seek(0)
        index = sum(1 for line in handle if line.strip())
        handle.write(json.dumps({"index": index, "prompt": prompt}) + "\n")
        handle.flush()
    return index


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
