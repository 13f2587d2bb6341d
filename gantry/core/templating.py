"""Command template expansion and secret redaction.

Templates use ``${{ namespace.key }}`` expressions::

    docker build -t ${{ params.image_name }}:${{ run.revision }} .

Namespaces: ``params``, ``secrets``, ``env`` (pipeline constants) and
``run`` (run context). References are checked before a run starts, so a
typo fails the definition instead of a task half-way through.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from gantry.core.errors import TemplateError

NAMESPACES = ("params", "secrets", "env", "run")
RUN_KEYS = frozenset({"id", "ref", "branch", "revision", "environment", "source_dir"})

_EXPRESSION = re.compile(r"\$\{\{\s*([A-Za-z_][\w]*)\.([A-Za-z_][\w-]*)\s*\}\}")
_OPENER = "${{"

REDACTED = "***"


def references(template: str) -> list[tuple[str, str]]:
    """Return every ``(namespace, key)`` referenced by *template*."""
    return [(m.group(1), m.group(2)) for m in _EXPRESSION.finditer(template)]


def check_template(
    template: str,
    *,
    parameters: Iterable[str],
    secrets: Iterable[str],
    env: Iterable[str],
    where: str = "",
) -> None:
    """Raise ``TemplateError`` if *template* is malformed or references unknowns."""
    known = {
        "params": set(parameters),
        "secrets": set(secrets),
        "env": set(env),
        "run": set(RUN_KEYS),
    }
    prefix = f"{where}: " if where else ""

    if template.count(_OPENER) != len(references(template)):
        raise TemplateError(f"{prefix}malformed expression in {template!r}")

    for namespace, key in references(template):
        if namespace not in known:
            raise TemplateError(
                f"{prefix}unknown namespace {namespace!r} "
                f"(expected one of {', '.join(NAMESPACES)})"
            )
        if key not in known[namespace]:
            raise TemplateError(f"{prefix}unknown reference {namespace}.{key}")


def render(template: str, namespaces: Mapping[str, Mapping[str, str]]) -> str:
    """Expand every expression in *template* from *namespaces*."""

    def _substitute(match: re.Match[str]) -> str:
        namespace, key = match.group(1), match.group(2)
        try:
            return str(namespaces[namespace][key])
        except KeyError:
            raise TemplateError(f"unresolved reference {namespace}.{key}") from None

    return _EXPRESSION.sub(_substitute, template)


class SecretRedactor:
    """Masks secret values in any text bound for logs, ledger, or reports."""

    def __init__(self, secret_values: Iterable[str]) -> None:
        # Longest first so a secret containing another is masked whole.
        self._values = sorted(
            {v for v in secret_values if v}, key=len, reverse=True
        )

    def redact(self, text: str) -> str:
        for value in self._values:
            text = text.replace(value, REDACTED)
        return text

    def __call__(self, text: str) -> str:
        return self.redact(text)
