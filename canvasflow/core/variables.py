"""Prompt variable resolution.

Two placeholder families are supported:

- Upstream references: ``[A01]`` (one uppercase letter, two digits) replaced with
  the content of the node carrying that label. Unknown references stay in place
  so the user can see which one failed to resolve.
- Batch tokens: ``{data}``, ``{index}``, ``{total}``, ``{progress}``, ``{date}`` ...
  (case-insensitive, whitespace inside the braces allowed) replaced from the
  current batch item.

All functions here are pure.
"""

from __future__ import annotations

import datetime as dt
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

REFERENCE_PATTERN = re.compile(r"\[([A-Z][0-9]{2})\]")
_FULL_REFERENCE_PATTERN = re.compile(r"^\[([A-Z][0-9]{2})\]$")

# token alias -> BatchContext field
_BATCH_TOKENS: dict[str, str] = {
    "data": "item",
    "input": "item",
    "batch": "item",
    "content": "item",
    "index": "position",
    "number": "position",
    "total": "total",
    "count": "total",
    "progress": "progress",
    "date": "date",
    "time": "time",
    "datetime": "datetime",
}
BATCH_TOKEN_PATTERN = re.compile(
    r"\{\s*(" + "|".join(_BATCH_TOKENS) + r")\s*\}", re.IGNORECASE
)


@dataclass(frozen=True)
class VariableReference:
    """A reference found in a template."""

    variable: str  # "[A01]"
    label: str  # "A01"
    span: tuple[int, int]


@dataclass(frozen=True)
class VariableDiagnostic:
    """A reference that points at no known node."""

    variable: str
    label: str
    message: str
    span: tuple[int, int]


@dataclass(frozen=True)
class BatchContext:
    """Values for batch tokens. ``index`` is 0-based."""

    item: str
    index: int
    total: int
    date: str = ""
    time: str = ""
    datetime: str = ""

    @classmethod
    def now(cls, item: str, index: int, total: int, at: dt.datetime | None = None) -> BatchContext:
        """Build a context with date/time values formatted from local time."""
        at = at or dt.datetime.now()
        return cls(
            item=item,
            index=index,
            total=total,
            date=at.strftime("%Y-%m-%d"),
            time=at.strftime("%H:%M:%S"),
            datetime=at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    @property
    def position(self) -> str:
        return str(self.index + 1)

    @property
    def progress(self) -> str:
        if self.total <= 0:
            return "0%"
        return f"{round((self.index + 1) / self.total * 100)}%"

    def value_for(self, token: str) -> str:
        return str(getattr(self, _BATCH_TOKENS[token.lower()]))


# --- Reference parsing ---


def parse_references(template: str) -> list[VariableReference]:
    """Find every ``[XNN]`` reference, in order of appearance."""
    return [
        VariableReference(variable=m.group(0), label=m.group(1), span=m.span())
        for m in REFERENCE_PATTERN.finditer(template)
    ]


def has_references(template: str) -> bool:
    return REFERENCE_PATTERN.search(template) is not None


def unique_references(template: str) -> list[str]:
    """Distinct referenced labels, sorted."""
    return sorted({m.group(1) for m in REFERENCE_PATTERN.finditer(template)})


def is_valid_reference(variable: str) -> bool:
    return _FULL_REFERENCE_PATTERN.match(variable) is not None


def extract_label(variable: str) -> str | None:
    """``"[A01]"`` -> ``"A01"``; None if the text is not a single reference."""
    match = _FULL_REFERENCE_PATTERN.match(variable)
    return match.group(1) if match else None


def replace_reference(template: str, label: str, replacement: str) -> str:
    """Replace every occurrence of one reference."""
    return template.replace(f"[{label}]", replacement)


def suggest_variables(labels: Iterable[str]) -> list[dict[str, str]]:
    """Describe the references available to a node, for display."""
    return [
        {
            "variable": f"[{label}]",
            "description": f"Output from block {label}",
            "example": f"Use [{label}] to reference the content from block {label}",
        }
        for label in sorted(labels)
    ]


# --- Resolution ---


def _substitute_references(template: str, context: Mapping[str, str]) -> tuple[str, int]:
    count = 0

    def repl(match: re.Match) -> str:
        nonlocal count
        label = match.group(1)
        if label not in context:
            return match.group(0)
        count += 1
        return context[label]

    # Single pass: substituted content is never re-scanned
    return REFERENCE_PATTERN.sub(repl, template), count


def _substitute_batch_tokens(template: str, batch: BatchContext) -> tuple[str, int]:
    return BATCH_TOKEN_PATTERN.subn(lambda m: batch.value_for(m.group(1)), template)


def resolve(template: str, context: Mapping[str, str]) -> str:
    """Replace ``[XNN]`` references whose label is in ``context``.

    Content is inserted verbatim. References with no entry in ``context`` are
    left untouched.
    """
    return _substitute_references(template, context)[0]


def resolve_batch(template: str, batch: BatchContext) -> str:
    """Replace batch tokens.

    When the template holds no batch token and the item is not blank, the item
    is appended after a blank line so batch data is never dropped.
    """
    return prepare_prompt(template, {}, batch)


def prepare_prompt(
    template: str,
    references: Mapping[str, str],
    batch: BatchContext | None = None,
) -> str:
    """Resolve references, then batch tokens.

    The item-append fallback only applies when neither family substituted
    anything.
    """
    result, ref_count = _substitute_references(template, references)
    if batch is None:
        return result

    result, token_count = _substitute_batch_tokens(result, batch)
    if ref_count == 0 and token_count == 0 and batch.item.strip():
        result = f"{result}\n\n{batch.item}"
    return result


def validate_references(template: str, known_labels: Iterable[str]) -> list[VariableDiagnostic]:
    """One diagnostic per reference whose label is not a known node."""
    known = set(known_labels)
    return [
        VariableDiagnostic(
            variable=ref.variable,
            label=ref.label,
            message=f"Variable {ref.variable} references unavailable block {ref.label}",
            span=ref.span,
        )
        for ref in parse_references(template)
        if ref.label not in known
    ]
