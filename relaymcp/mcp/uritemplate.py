"""Minimal URI template handling for resource templates.

Supports simple ``{name}`` expressions and the ``{name?}`` optional form
used by some servers, e.g. ``health://image/{deviceId}/{date?}``.
"""

import re
from typing import Any, Dict, List, Tuple
from urllib.parse import quote, unquote

_EXPRESSION = re.compile(r"(/?)\{([A-Za-z0-9_]+)(\??)\}")


def template_variables(template: str) -> List[Tuple[str, bool]]:
    """Return ``(name, optional)`` for each variable, in template order."""
    return [(m.group(2), bool(m.group(3))) for m in _EXPRESSION.finditer(template)]


def expand(template: str, params: Dict[str, Any]) -> str:
    """
    Substitute ``params`` into ``template``.

    Missing optional variables drop their whole path segment; a missing
    required variable raises ``KeyError``.
    """

    def _replace(match: "re.Match[str]") -> str:
        slash, name, optional = match.groups()
        value = params.get(name)
        if value is None or value == "":
            if optional:
                return ""
            raise KeyError(name)
        return f"{slash}{quote(str(value), safe='')}"

    return _EXPRESSION.sub(_replace, template)


def match(template: str, uri: str) -> Dict[str, str]:
    """
    Extract variables from ``uri`` according to ``template``.

    Returns an empty dict if the uri does not match.
    """
    pattern = ""
    pos = 0
    for m in _EXPRESSION.finditer(template):
        pattern += re.escape(template[pos:m.start()])
        slash, name, optional = m.groups()
        group = f"{re.escape(slash)}(?P<{name}>[^/]+)"
        pattern += f"(?:{group})?" if optional else group
        pos = m.end()
    pattern += re.escape(template[pos:])

    found = re.fullmatch(pattern, uri)
    if not found:
        return {}
    return {k: unquote(v) for k, v in found.groupdict().items() if v is not None}
