from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid"}

_GITHUB_PATH_RE = re.compile(r"^/(?P<owner>[^/]+)/(?P<repo>[^/]+)/(?P<kind>pull|issues)/(?P<number>\d+)")
_GITLAB_PATH_RE = re.compile(r"^/(?P<project>.+?)/-/(?P<kind>merge_requests|issues)/(?P<number>\d+)")
_JIRA_PATH_RE = re.compile(r"/browse/(?P<key>[A-Z][A-Z0-9]+-\d+)$")


@dataclass(slots=True, frozen=True)
class ProviderReference:
    source: str
    kind: str
    repo_name: str | None = None
    number: int | None = None
    key: str | None = None


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization applied before matching provider links."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    if netloc.startswith("www."):
        netloc = netloc[4:]

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def parse_provider_reference(raw_url: str) -> ProviderReference | None:
    """Map a GitHub, GitLab or Jira URL onto the activity it points at."""
    normalized = normalize_url(raw_url.rstrip(".,;:!?)]>\"'"))
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None

    host = parsed.netloc
    path = parsed.path

    if host == "github.com":
        match = _GITHUB_PATH_RE.match(path)
        if not match:
            return None
        return ProviderReference(
            source="github",
            kind="pr" if match.group("kind") == "pull" else "issue",
            repo_name=f"{match.group('owner')}/{match.group('repo')}",
            number=int(match.group("number")),
        )

    gitlab_match = _GITLAB_PATH_RE.match(path)
    if gitlab_match and ("gitlab" in host):
        return ProviderReference(
            source="gitlab",
            kind="pr" if gitlab_match.group("kind") == "merge_requests" else "issue",
            repo_name=gitlab_match.group("project"),
            number=int(gitlab_match.group("number")),
        )

    jira_match = _JIRA_PATH_RE.search(path)
    if jira_match:
        return ProviderReference(source="jira", kind="ticket", key=jira_match.group("key"))

    return None
