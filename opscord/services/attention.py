import re
from typing import Any

SOURCE_BASE_SCORES = {
    "jira": 50,
    "discord": 40,
    "github": 30,
}
DEFAULT_BASE_SCORE = 20

# Substring matches on purpose: "failing" hits "fail", "robot" hits "bot".
KEYWORD_ADJUSTMENTS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"urgent|critical|blocker|outage|down|fail|error|exception"), 40),
    (re.compile(r"fix|patch|resolve"), 10),
    (re.compile(r"chore|refactor|docs|style|test"), -10),
    (re.compile(r"dependabot|renovate|snyk|bot"), -20),
)

HIGH_PRIORITIES = {"High", "Highest"}


def score_event(
    source: str,
    title: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> int:
    score = SOURCE_BASE_SCORES.get(source, DEFAULT_BASE_SCORE)

    content = f"{title or ''} {description or ''}".lower()
    for pattern, delta in KEYWORD_ADJUSTMENTS:
        if pattern.search(content):
            score += delta

    if metadata:
        if metadata.get("status") == "closed" or metadata.get("merged") is True:
            score -= 10
        if metadata.get("priority") in HIGH_PRIORITIES:
            score += 30

    return max(0, min(100, score))
