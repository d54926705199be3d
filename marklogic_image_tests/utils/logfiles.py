"""Matching of captured text (container logs, HTTP bodies) against expected patterns.

Multi-line log output is treated as a single blob of text per check. Glob patterns are
matched against the whole blob, `*` matches any run of characters including newlines.
Regex patterns are searched for anywhere in the blob and are case-sensitive.
"""

import enum
import fnmatch
import functools
import logging
import re
import typing as tp

from marklogic_image_tests.utils import errors

LOGGER = logging.getLogger(__name__)

# NOTE: The regex needs to be unanchored.
ERRORS_RE = re.compile(r"\b(Error|Critical|Alert|Emergency):")
ERRORS_IGNORED = [
    # Retried by the server on a freshly started node
    "SVC-SOCRECV",
    "XDMP-CANCELED",
    # Joining nodes are rejected until the bootstrap node is ready
    "XDMP-HOSTOFFLINE",
]


class MatchMode(enum.StrEnum):
    GLOB = "glob"
    REGEX = "regex"


class MatchResult(tp.NamedTuple):
    matched: bool
    message: str

    def __bool__(self) -> bool:
        return self.matched


@functools.lru_cache(maxsize=256)
def _compile(pattern: str, mode: MatchMode) -> re.Pattern[str]:
    if mode == MatchMode.GLOB:
        # `fnmatch.translate` uses `(?s:...)`, so `*` spans newlines
        return re.compile(fnmatch.translate(pattern))
    return re.compile(pattern, re.MULTILINE)


def matches(text: str, pattern: str, *, mode: MatchMode = MatchMode.GLOB) -> bool:
    """Check if `text` matches the `pattern`."""
    compiled = _compile(pattern, MatchMode(mode))
    if mode == MatchMode.GLOB:
        return compiled.match(text) is not None
    return compiled.search(text) is not None


def match_result(
    text: str, pattern: str, *, label: str = "text", mode: MatchMode = MatchMode.GLOB
) -> MatchResult:
    """Match `text` and describe the outcome."""
    matched = matches(text, pattern, mode=mode)
    if matched:
        return MatchResult(matched=True, message=f"Found `{pattern}` in {label}.")
    return MatchResult(matched=False, message=f"No match for `{pattern}` in {label}.")


def assert_matches(
    text: str, pattern: str, *, label: str, mode: MatchMode = MatchMode.GLOB
) -> None:
    """Fail with `PatternMismatch` when `pattern` is absent from `text`."""
    if not matches(text, pattern, mode=mode):
        raise errors.PatternMismatch(label=label, pattern=pattern, text=text)


def assert_not_matches(
    text: str, pattern: str, *, label: str, mode: MatchMode = MatchMode.GLOB
) -> None:
    """Fail with `PatternMismatch` when `pattern` is present in `text`."""
    if matches(text, pattern, mode=mode):
        raise errors.PatternMismatch(label=label, pattern=pattern, text=text, negate=True)


def search_errors(
    text: str,
    *,
    errors_re: re.Pattern[str] = ERRORS_RE,
    ignored: tp.Iterable[str] = (),
) -> list[str]:
    """Return error lines from log output, skipping lines matching ignore rules."""
    ignored_re = re.compile("|".join({*ERRORS_IGNORED, *ignored}) or "nothing_to_ignore")
    return [
        line
        for line in text.splitlines()
        if errors_re.search(line) and not ignored_re.search(line)
    ]


def get_logfiles_errors(logs: dict[str, str], *, ignored: tp.Iterable[str] = ()) -> str:
    """Get errors found in logs, keyed by the name of the log source."""
    ignored = list(ignored)
    err = [
        f"{source}: {line}"
        for source, text in logs.items()
        for line in search_errors(text, ignored=ignored)
    ]
    return "\n".join(err)
