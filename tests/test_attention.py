from opscord.services.attention import score_event


def test_jira_base_score_with_empty_text() -> None:
    assert score_event("jira", "", "") == 50


def test_urgency_keywords_add_forty() -> None:
    base = score_event("jira", "", "")
    assert score_event("jira", "critical outage", "") == base + 40


def test_bot_fragments_subtract_twenty() -> None:
    base = score_event("jira", "", "")
    assert score_event("jira", "dependabot", "") == base - 20


def test_github_fix_title_gets_remediation_bonus() -> None:
    assert score_event("github", "Fix login bug", None) == 40


def test_unknown_source_uses_default_base() -> None:
    assert score_event("slack", "hello there", None) == 20
    assert score_event("discord", "hello there", None) == 40


def test_metadata_adjustments() -> None:
    assert score_event("github", "Add feature", None, {"merged": True}) == 20
    assert score_event("gitlab", "Add feature", None, {"status": "closed"}) == 10
    assert score_event("jira", "", None, {"priority": "Highest"}) == 80
    assert score_event("jira", "", None, {"priority": "Low"}) == 50


def test_score_is_clamped_to_bounds() -> None:
    assert score_event("jira", "critical outage", "fix", {"priority": "High"}) == 100
    assert score_event("slack", "chore: bump by renovate", None, {"status": "closed"}) == 0


def test_score_is_deterministic() -> None:
    args = ("github", "Refactor error handling", "docs follow", {"merged": False})
    scores = {score_event(*args) for _ in range(10)}
    assert len(scores) == 1
    assert 0 <= scores.pop() <= 100
