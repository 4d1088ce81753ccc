"""
Line-level text patches.

A patch is an opaque JSON string holding a list of operations that rewrite a
source text into a target text:

    ["=", n]      keep the next n source lines
    ["-", n]      drop the next n source lines
    ["+", lines]  emit the given lines

Lines keep their terminators, so applying a patch reproduces the target
exactly.
"""

from __future__ import annotations

import json
from difflib import SequenceMatcher


class PatchError(ValueError):
    pass


def make_patch(source: str, target: str) -> str:
    """Patch that turns `source` into `target`."""
    a = source.splitlines(keepends=True)
    b = target.splitlines(keepends=True)
    ops: list[list] = []
    for tag, i1, i2, j1, j2 in SequenceMatcher(None, a, b, autojunk=False).get_opcodes():
        if tag == "equal":
            ops.append(["=", i2 - i1])
            continue
        if tag in ("delete", "replace"):
            ops.append(["-", i2 - i1])
        if tag in ("insert", "replace"):
            ops.append(["+", b[j1:j2]])
    return json.dumps(ops, ensure_ascii=False)


def apply_patch(patch: str, text: str) -> str:
    lines = text.splitlines(keepends=True)
    try:
        ops = json.loads(patch)
    except json.JSONDecodeError as exc:
        raise PatchError("Patch is not valid JSON") from exc

    out: list[str] = []
    pos = 0
    for op, arg in ops:
        if op == "=":
            if pos + arg > len(lines):
                raise PatchError(f"Patch keeps {arg} lines at {pos} past end of text ({len(lines)} lines)")
            out.extend(lines[pos : pos + arg])
            pos += arg
        elif op == "-":
            if pos + arg > len(lines):
                raise PatchError(f"Patch drops {arg} lines at {pos} past end of text ({len(lines)} lines)")
            pos += arg
        elif op == "+":
            out.extend(arg)
        else:
            raise PatchError(f"Unknown patch operation {op!r}")

    if pos != len(lines):
        raise PatchError(f"Patch consumed {pos} of {len(lines)} lines")
    return "".join(out)
