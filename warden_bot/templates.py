from __future__ import annotations

import random
from typing import Any, Optional, Sequence, Union

TemplateSource = Union[str, Sequence[str]]


def pick_message(template: TemplateSource, rng: Optional[random.Random] = None) -> str:
    """Return the template itself, or one candidate chosen uniformly at random."""
    if isinstance(template, str):
        return template
    if not template:
        return ""
    return (rng or random).choice(list(template))


def fill_placeholders(template: str, **values: Any) -> str:
    for key, value in values.items():
        template = template.replace(f"%{key}%", str(value))
    return template


def render(template: TemplateSource, rng: Optional[random.Random] = None, **values: Any) -> str:
    return fill_placeholders(pick_message(template, rng), **values)


def humanize_duration(seconds: int) -> str:
    parts = []
    remaining = seconds
    for unit_seconds, suffix in ((86400, "d"), (3600, "h"), (60, "m"), (1, "s")):
        if remaining >= unit_seconds:
            value = remaining // unit_seconds
            remaining %= unit_seconds
            parts.append(f"{value}{suffix}")
    return " ".join(parts) if parts else "0s"
