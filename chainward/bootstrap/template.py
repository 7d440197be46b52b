"""``{{KEY}}`` placeholder substitution for bootstrap payloads."""

from __future__ import annotations

import re
from collections.abc import Mapping

from loguru import logger

from chainward.errors import TemplateError

log = logger.bind(component="template")

PLACEHOLDER = re.compile(r"\{\{([A-Z][A-Z0-9_]*)\}\}")


def placeholders(template: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render(template: str, values: Mapping[str, object], *, strict: bool = False) -> str:
    """Substitute ``{{KEY}}`` placeholders with ``values``.

    Unknown placeholders are left verbatim. With ``strict=True`` they raise
    ``TemplateError`` instead, listing every unresolved name.
    """
    missing = [name for name in placeholders(template) if name not in values]
    if missing:
        if strict:
            raise TemplateError(f"Unresolved placeholders: {', '.join(missing)}")
        log.warning("Leaving unresolved placeholders: {names}", names=", ".join(missing))

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(values[name]) if name in values else match.group(0)

    return PLACEHOLDER.sub(substitute, template)
