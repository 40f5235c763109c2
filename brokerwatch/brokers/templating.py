"""Render ``${field}`` placeholders in broker action templates.

Broker scripts write placeholders as ``${firstName}``. Rendering goes through a
Jinja2 environment configured with those delimiters and StrictUndefined, so a
placeholder with no matching profile value fails loudly instead of producing a
URL with a hole in it.
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError

_AGE_BUCKET = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)|\+)\s*$")

_environment = Environment(
    variable_start_string="${",
    variable_end_string="}",
    block_start_string="${%",
    block_end_string="%}",
    comment_start_string="${#",
    comment_end_string="#}",
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


class TemplateRenderError(ValueError):
    """Raised when a template references a field the profile does not provide."""

    pass


def select_age_range(age: int, buckets: List[str]) -> Optional[str]:
    """Pick the bucket containing ``age`` from labels like ``"31-40"`` or ``"81+"``.

    Labels that don't parse are ignored. Returns None when no bucket matches.
    """
    for bucket in buckets:
        match = _AGE_BUCKET.match(bucket)
        if not match:
            continue
        low = int(match.group(1))
        high = int(match.group(2)) if match.group(2) else None
        if age >= low and (high is None or age <= high):
            return bucket
    return None


def render_template(
    template: str,
    fields: Dict[str, Any],
    age_range: Optional[List[str]] = None,
    quote_values: bool = True,
) -> str:
    """Substitute profile values into a broker template.

    Args:
        template: Template text containing ``${field}`` placeholders
        fields: Values by placeholder name (see ``ProfileQuery.template_fields``)
        age_range: Age buckets of a navigate action; adds an ``ageRange`` value
        quote_values: URL-quote substituted values

    Returns:
        Rendered text

    Raises:
        TemplateRenderError: If a placeholder has no value or the template is malformed
    """
    values = dict(fields)
    if age_range and "age" in values:
        bucket = select_age_range(int(values["age"]), age_range)
        if bucket is not None:
            values["ageRange"] = bucket

    if quote_values:
        values = {key: quote(str(value), safe="") for key, value in values.items()}

    try:
        return _environment.from_string(template).render(**values)
    except UndefinedError as e:
        raise TemplateRenderError(f"Template field unavailable: {e.message}") from e
    except TemplateError as e:
        raise TemplateRenderError(f"Malformed template {template!r}: {e}") from e
