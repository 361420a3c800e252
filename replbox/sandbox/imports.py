"""Import rewriting for versioned package specifiers.

Submissions may pin a distribution inline, e.g. ``import attrs@23.2.0 as at``
or ``from rich.console@13.7.1 import Console``. The marker is not Python
syntax, so this pass runs on source text before the classifier parses it.

Two modes share the same recognition rules:

- ``RewriteMode.EXECUTE`` turns every versioned specifier into an awaited
  ``__import_url__`` call against the package index URL of that release.
- ``RewriteMode.ANALYZE`` strips the marker and leaves it in a trailing
  comment (``# attrs@23.2.0``) so static tooling can parse the source and still
  see the intended version.

Specifiers without a marker, relative specifiers, anything that does not
match ``PACKAGE_SPEC_RE`` and matches starting inside a string literal are
left untouched. Both modes preserve the number
of lines so tracebacks keep pointing at the user's source.
"""

from __future__ import annotations

import io
import re
import tokenize
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

import structlog

from .constants import (
    IMPORT_NAMES_NAME,
    IMPORT_URL_NAME,
    PACKAGE_SPEC_RE,
    PRIMARY_HOST,
)

logger = structlog.get_logger()

_IMPORT_RE = re.compile(r"^(?P<indent>[ \t]*)import[ \t]+(?P<body>[^\n#;]+)", re.M)
_FROM_RE = re.compile(
    r"^(?P<indent>[ \t]*)from[ \t]+(?P<spec>[^\s;#()]+)[ \t]+import[ \t]*"
    r"(?P<names>\([^)]*\)|[^\n#;]+)",
    re.M,
)
_DYNAMIC_RE = re.compile(
    r"(?P<call>\bimportlib\s*\.\s*import_module|\b__import__)\s*\(\s*"
    r"(?P<quote>[\"'])(?P<spec>[^\"'\n]+)(?P=quote)\s*\)"
)
_ALIAS_RE = re.compile(r"(?P<name>\S+?)(?:\s+as\s+(?P<alias>[A-Za-z_][A-Za-z0-9_]*))?")

_FSTRING_START = getattr(tokenize, "FSTRING_START", None)
_FSTRING_END = getattr(tokenize, "FSTRING_END", None)


class RewriteMode(str, Enum):
    """How versioned specifiers are rewritten."""

    EXECUTE = "execute"
    ANALYZE = "analyze"


@dataclass(frozen=True)
class PackageSpec:
    """A parsed ``module[@version]`` specifier."""

    module: str
    version: str | None = None

    @property
    def distribution(self) -> str:
        """Distribution name on the index: the first dotted component."""
        return self.module.split(".", 1)[0]

    @property
    def is_tag(self) -> bool:
        """True for dist-tags such as ``latest`` or ``beta``."""
        return self.version is not None and not self.version[0].isdigit()

    def __str__(self) -> str:
        if self.version is None:
            return self.module
        return f"{self.distribution}@{self.version}"


def parse_package_spec(text: str) -> PackageSpec | None:
    """Parse a bare package specifier, or return None when it is not one.

    Relative (``.mod``) and path-like (``./x``, ``/abs/x``) specifiers never
    match the grammar.
    """
    match = PACKAGE_SPEC_RE.match(text.strip())
    if match is None:
        return None
    return PackageSpec(module=match["module"], version=match["version"])


def module_url(spec: PackageSpec, host: str = PRIMARY_HOST) -> str:
    """Index URL describing the release a specifier resolves to."""
    base = host.rstrip("/")
    if spec.version is None or spec.is_tag:
        return f"{base}/pypi/{spec.distribution}/json"
    return f"{base}/pypi/{spec.distribution}/{spec.version}/json"


def _split_alias(item: str) -> tuple[str, str | None] | None:
    match = _ALIAS_RE.fullmatch(item.strip())
    if match is None:
        return None
    return match["name"], match["alias"]


def _line_of(source: str, offset: int) -> int:
    return source.count("\n", 0, offset)


def _string_spans(source: str) -> list[tuple[int, int]]:
    """Character ranges of the string literals in ``source``."""
    line_starts = [0] + [match.end() for match in re.finditer("\n", source)]

    def offset(position: tuple[int, int]) -> int:
        row, col = position
        return line_starts[row - 1] + col

    spans: list[tuple[int, int]] = []
    fstrings: list[int] = []
    try:
        for token in tokenize.generate_tokens(io.StringIO(source).readline):
            if token.type == tokenize.STRING:
                spans.append((offset(token.start), offset(token.end)))
            elif token.type == _FSTRING_START:
                fstrings.append(offset(token.start))
            elif token.type == _FSTRING_END and fstrings:
                spans.append((fstrings.pop(), offset(token.end)))
    except (tokenize.TokenError, SyntaxError) as e:
        # keep the spans found so far; the classifier reports the error
        logger.debug("string_scan_incomplete", error=str(e))
    return spans


class ImportRewriter:
    """Rewrites versioned import specifiers in a submission."""

    def __init__(self, mode: RewriteMode = RewriteMode.EXECUTE, host: str = PRIMARY_HOST) -> None:
        self.mode = mode
        self.host = host
        # line number -> markers to append in analysis mode
        self._comments: dict[int, list[str]] = defaultdict(list)
        self._source = ""
        self._strings: list[tuple[int, int]] = []

    def rewrite(self, source: str) -> str:
        """Return ``source`` with every versioned specifier rewritten."""
        self._comments.clear()
        text = source
        for pattern, rewrite in (
            (_FROM_RE, self._rewrite_from),
            (_IMPORT_RE, self._rewrite_import),
            (_DYNAMIC_RE, self._rewrite_dynamic),
        ):
            self._source = text
            self._strings = _string_spans(text)
            text = pattern.sub(rewrite, text)

        if self._comments:
            lines = text.split("\n")
            for lineno, markers in self._comments.items():
                lines[lineno] = f"{lines[lineno]}  # {' '.join(markers)}"
            text = "\n".join(lines)

        if text != source:
            logger.debug("imports_rewritten", mode=self.mode.value, host=self.host)
        return text

    def _url_call(self, spec: PackageSpec, *, top_level: bool = False) -> str:
        url = module_url(spec, self.host)
        suffix = ", top_level=True" if top_level else ""
        return f'await {IMPORT_URL_NAME}("{url}", "{spec.module}"{suffix})'

    def _remember(self, match: re.Match[str], spec: PackageSpec) -> None:
        self._comments[_line_of(self._source, match.end())].append(str(spec))

    def _in_string(self, match: re.Match[str]) -> bool:
        return any(start <= match.start() < end for start, end in self._strings)

    def _rewrite_import(self, match: re.Match[str]) -> str:
        if self._in_string(match):
            return match[0]
        body = match["body"].rstrip()
        trailing = match["body"][len(body):]
        items = [_split_alias(item) for item in body.split(",")]
        if any(item is None for item in items):
            return match[0]
        specs = [(parse_package_spec(name), name, alias) for name, alias in items]  # type: ignore[misc]
        if not any(spec is not None and spec.version is not None for spec, _, _ in specs):
            return match[0]

        indent = match["indent"]
        if self.mode is RewriteMode.ANALYZE:
            parts = []
            for spec, name, alias in specs:
                module = spec.module if spec is not None else name
                parts.append(f"{module} as {alias}" if alias else module)
                if spec is not None and spec.version is not None:
                    self._remember(match, spec)
            return f"{indent}import {', '.join(parts)}{trailing}"

        statements = []
        for spec, name, alias in specs:
            if spec is None or spec.version is None:
                statements.append(f"import {name} as {alias}" if alias else f"import {name}")
                continue
            if alias:
                statements.append(f"{alias} = {self._url_call(spec)}")
            else:
                # ``import a.b`` binds ``a``
                top_level = "." in spec.module
                statements.append(f"{spec.distribution} = {self._url_call(spec, top_level=top_level)}")
        return f"{indent}{'; '.join(statements)}{trailing}"

    def _rewrite_from(self, match: re.Match[str]) -> str:
        spec = parse_package_spec(match["spec"])
        if spec is None or spec.version is None or self._in_string(match):
            return match[0]

        names = match["names"]
        if self.mode is RewriteMode.ANALYZE:
            self._remember(match, spec)
            return f"{match['indent']}from {spec.module} import {names}"

        stripped = names.rstrip()
        trailing = names[len(stripped):]
        inner = stripped
        if inner.startswith("("):
            inner = inner[1:-1]
        items = [item.strip() for item in inner.split(",") if item.strip()]
        if "*" in items:
            raise SyntaxError(
                f"cannot import * from versioned package {spec}",
                ("<repl>", _line_of(self._source, match.start()) + 1, 1, match[0]),
            )
        pairs = [_split_alias(item) for item in items]
        if not pairs or any(pair is None for pair in pairs):
            return match[0]

        targets = "".join(f"{alias or name}, " for name, alias in pairs)  # type: ignore[misc]
        attrs = "".join(f'"{name}", ' for name, _ in pairs)  # type: ignore[misc]
        statement = (
            f"{match['indent']}({targets.rstrip()}) = "
            f"{IMPORT_NAMES_NAME}({self._url_call(spec)}, ({attrs.rstrip()}))"
        )
        # keep line numbers stable for parenthesised multi-line imports
        return statement + "\n" * stripped.count("\n") + trailing

    def _rewrite_dynamic(self, match: re.Match[str]) -> str:
        spec = parse_package_spec(match["spec"])
        if spec is None or spec.version is None or self._in_string(match):
            return match[0]

        if self.mode is RewriteMode.ANALYZE:
            self._remember(match, spec)
            quote = match["quote"]
            return f"{match['call']}({quote}{spec.module}{quote})"

        # __import__("a.b") returns the top-level package, import_module the leaf
        top_level = match["call"] == "__import__" and "." in spec.module
        return f"({self._url_call(spec, top_level=top_level)})"


def rewrite_imports(
    source: str,
    mode: RewriteMode = RewriteMode.EXECUTE,
    *,
    host: str = PRIMARY_HOST,
) -> str:
    """Rewrite versioned specifiers in ``source``; see :class:`ImportRewriter`."""
    return ImportRewriter(mode=mode, host=host).rewrite(source)
