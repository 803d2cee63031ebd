"""Extraction of GitHub issue references from pull request and ticket text.

Each accepted reference form is one entry in a pattern table. Bare digits are
never a reference on their own: a number needs a ``#``, a closing keyword, an
``@PR`` mention or an issue URL around it. Every candidate is then checked
against the issue numbers known to exist locally, and unknown numbers are
dropped.
"""

import re
from dataclasses import dataclass
from typing import Collection, Iterable

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

CLOSING_KEYWORDS = (
    "close",
    "closes",
    "closed",
    "fix",
    "fixes",
    "fixed",
    "resolve",
    "resolves",
    "resolved",
    "ref",
    "refs",
)

_REPOSITORY = r"[\w.-]+(?:/[\w.-]+)?"


@dataclass(frozen=True)
class ReferencePattern:
    """One accepted reference form; the issue number is the ``number`` group."""

    name: str
    regex: re.Pattern[str]

    def find_numbers(self, text: str) -> list[int]:
        """Return every issue number this form matches in the text."""
        return [int(match.group("number")) for match in self.regex.finditer(text)]


def issue_url_pattern(host: str = "github.com") -> ReferencePattern:
    """Full issue URL on the given host, with optional query string or fragment."""
    return ReferencePattern(
        name="issue_url",
        regex=re.compile(
            rf"https?://(?:www\.)?{re.escape(host)}/[\w.-]+/[\w.-]+/issues/(?P<number>\d+)(?!\d)(?:[?#][^\s)\]>]*)?",
            re.IGNORECASE,
        ),
    )


def build_reference_patterns(host: str = "github.com") -> tuple[ReferencePattern, ...]:
    """The pattern table, in the order it is applied."""
    keywords = "|".join(re.escape(keyword) for keyword in CLOSING_KEYWORDS)
    return (
        ReferencePattern(
            name="closing_keyword",
            regex=re.compile(rf"\b(?:{keywords})\b:?\s+(?:{_REPOSITORY})?#(?P<number>\d+)\b", re.IGNORECASE),
        ),
        ReferencePattern(
            name="standalone_hash",
            regex=re.compile(r"(?<![\w#/&])#(?P<number>\d+)\b"),
        ),
        ReferencePattern(
            name="repository_prefixed",
            regex=re.compile(rf"(?<![\w./-]){_REPOSITORY}#(?P<number>\d+)\b"),
        ),
        ReferencePattern(
            name="pr_mention",
            regex=re.compile(r"(?<!\w)@PR\s*[#-]?(?P<number>\d+)\b", re.IGNORECASE),
        ),
        issue_url_pattern(host),
    )


def extract_raw_references(text: str | None, patterns: Iterable[ReferencePattern] | None = None) -> set[int]:
    """Return every issue number any pattern matches, without verification."""
    if not text:
        return set()
    numbers: set[int] = set()
    for pattern in patterns if patterns is not None else build_reference_patterns():
        numbers.update(pattern.find_numbers(text))
    return numbers


class ReferenceExtractor:
    """Finds issue references in free text and keeps only issues known locally."""

    def __init__(
        self,
        known_issue_numbers: Collection[int] | None = None,
        host: str = "github.com",
        patterns: Iterable[ReferencePattern] | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            known_issue_numbers: Issue numbers that exist locally. When None,
                candidates are returned unverified.
            host: Web host whose issue URLs count as references.
            patterns: Override the pattern table.
        """
        self.known_issue_numbers = set(known_issue_numbers) if known_issue_numbers is not None else None
        self.host = host
        self.patterns = tuple(patterns) if patterns is not None else build_reference_patterns(host)

    def extract_issue_references(self, text: str | None, source: str | None = None) -> set[int]:
        """Return verified issue numbers referenced in the text.

        Args:
            text: Text to scan, typically a pull request title and body.
            source: Label for log lines, e.g. "PR #12".
        """
        candidates = extract_raw_references(text, self.patterns)
        if self.known_issue_numbers is None:
            return candidates

        unknown = candidates - self.known_issue_numbers
        for number in sorted(unknown):
            logger.info("Dropping reference to unknown issue", source=source, candidate=number)
        return candidates - unknown


@dataclass(frozen=True)
class LinkedPullRequest:
    """A pull request URL found in ticket text."""

    owner: str
    repo: str
    number: int
    url: str


def extract_issue_urls(text: str | None, owner: str, repo: str, host: str = "github.com") -> set[int]:
    """Return issue numbers from issue URLs that point at the given repository."""
    if not text:
        return set()
    pattern = re.compile(
        rf"https?://(?:www\.)?{re.escape(host)}/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)/issues/(?P<number>\d+)(?!\d)",
        re.IGNORECASE,
    )
    return {
        int(match.group("number"))
        for match in pattern.finditer(text)
        if match.group("owner").lower() == owner.lower() and match.group("repo").lower() == repo.lower()
    }


def extract_pull_request_urls(text: str | None, host: str = "github.com") -> list[LinkedPullRequest]:
    """Return pull request URLs in the text, deduplicated, in order of appearance."""
    if not text:
        return []
    pattern = re.compile(
        rf"https?://(?:www\.)?{re.escape(host)}/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)/pull/(?P<number>\d+)(?!\d)",
        re.IGNORECASE,
    )
    seen: set[tuple[str, str, int]] = set()
    results: list[LinkedPullRequest] = []
    for match in pattern.finditer(text):
        key = (match.group("owner").lower(), match.group("repo").lower(), int(match.group("number")))
        if key in seen:
            continue
        seen.add(key)
        results.append(LinkedPullRequest(owner=match.group("owner"), repo=match.group("repo"), number=key[2], url=match.group(0)))
    return results
