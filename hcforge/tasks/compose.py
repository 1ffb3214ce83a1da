"""Startup script composition.

Core types and composition functions for the declarative script DSL used by
startup tasks. Each sub-step reports progress through ``hc_forge_progress``;
when several sub-steps are combined, each runs inside its own progress
window so the composed job reports one continuous 0-100 value.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Final, TypeAlias

from hcforge.constants import PROGRESS_FUNCTION, PROGRESS_TAG

# =============================================================================
# Core Types
# =============================================================================

Op: TypeAlias = str | Callable[[], str] | list["Op"] | None
"""Operation type: a literal string, a function returning one, or a list of ops."""


def resolve(op: Op) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case None:
            return ""
        case str(op):
            return op
        case list(op):
            return "\n".join(s for s in map(resolve, op) if s)
        case _:
            return op()


def shell_quote(value: object) -> str:
    """Single-quote ``value`` for POSIX shells.

    Example:
        >>> print(shell_quote("it's"))
        'it'"'"'s'
    """
    return "'" + str(value if value is not None else "").replace("'", "'\"'\"'") + "'"


_HEREDOC = re.compile(r"<<-?\s*'?([A-Za-z_][A-Za-z0-9_]*)'?")


def _indent(text: str) -> str:
    """Indent by two spaces, leaving heredoc bodies and terminators untouched."""
    lines: list[str] = []
    terminator: str | None = None
    for line in text.splitlines():
        if terminator is not None:
            lines.append(line)
            if line == terminator:
                terminator = None
            continue
        lines.append(f"  {line}" if line else line)
        if m := _HEREDOC.search(line):
            terminator = m.group(1)
    return "\n".join(lines)


# =============================================================================
# Header
# =============================================================================

HEADER: Final = f"""#!/bin/sh
HC_FORGE_PROGRESS_BASE=0
HC_FORGE_PROGRESS_SPAN=100
{PROGRESS_FUNCTION}() {{
  _hc_pct="$1"
  shift
  case "$_hc_pct" in
    ''|*[!0-9]*) _hc_pct=0 ;;
  esac
  _hc_scaled=$((HC_FORGE_PROGRESS_BASE + _hc_pct * HC_FORGE_PROGRESS_SPAN / 100))
  echo "{PROGRESS_TAG} $_hc_scaled $*"
}}
"""


# =============================================================================
# Operations
# =============================================================================


def progress(percent: int, message: str) -> Op:
    """Emit a progress marker. ``message`` may reference shell variables."""
    safe = message.replace('"', '\\"')
    return f'{PROGRESS_FUNCTION} {percent} "{safe}"'


def export(name: str, value: str) -> Op:
    return f"export {name}={shell_quote(value)}"


def fail(message: str, code: int) -> Op:
    safe = message.replace('"', '\\"')
    return [f'echo "{safe}"', f"exit {code}"]


def by_package_manager(branches: Mapping[str, Op], *, otherwise: Op) -> Op:
    """Dispatch on the first available package manager.

    Example:
        >>> by_package_manager({"apt-get": "apt-get update"}, otherwise="exit 2")()
        'if command -v apt-get >/dev/null 2>&1; then\\n  apt-get update\\nelse\\n  exit 2\\nfi'
    """

    def generate() -> str:
        lines: list[str] = []
        for i, (manager, op) in enumerate(branches.items()):
            keyword = "if" if i == 0 else "elif"
            lines.append(f"{keyword} command -v {manager} >/dev/null 2>&1; then")
            lines.append(_indent(resolve(op)))
        lines.append("else")
        lines.append(_indent(resolve(otherwise)))
        lines.append("fi")
        return "\n".join(lines)

    return generate


def when(condition: str, *ops: Op) -> Op:
    """Execute operations only if condition is true."""
    if not ops:
        return None

    def generate() -> str:
        body = "\n".join(resolve(op) for op in ops)
        return f"if {condition}; then\n{_indent(body)}\nfi"

    return generate


def write_file(path: str, content: str, *, tag: str = "EOF_HC_FORGE") -> Op:
    """Write ``content`` verbatim to ``path`` with a quoted heredoc."""
    return f"cat > {path} <<'{tag}'\n{content.rstrip()}\n{tag}"


def step(base: int, span: int, *ops: Op) -> Op:
    """Run ops in a subshell whose progress markers map into [base, base+span].

    A non-zero exit inside the step aborts the whole script with the same code.
    """

    def generate() -> str:
        body = "\n".join(resolve(op) for op in ops)
        return (
            f"HC_FORGE_PROGRESS_BASE={base}\n"
            f"HC_FORGE_PROGRESS_SPAN={span}\n"
            f"(\n{_indent(body)}\n) || exit $?"
        )

    return generate


# =============================================================================
# Composition
# =============================================================================


def script(*ops: Op, header: str = HEADER) -> str:
    """Compose operations into a complete shell script.

    Example:
        >>> text = script(export("FOO", "bar"), progress(100, "done"))
        >>> text.splitlines()[-1]
        'hc_forge_progress 100 "done"'
    """
    commands = [s for s in (resolve(op) for op in ops) if s]
    return header + "\n" + "\n\n".join(commands)


def split_windows(weights: list[int]) -> list[tuple[int, int]]:
    """Split 0-100 into consecutive (base, span) windows proportional to ``weights``.

    The last window absorbs rounding so the windows always end at 100.
    """
    if not weights:
        return []
    total = sum(weights)
    windows: list[tuple[int, int]] = []
    base = 0
    for i, weight in enumerate(weights):
        span = 100 - base if i == len(weights) - 1 else (100 * weight) // total
        windows.append((base, span))
        base += span
    return windows
