"""Canonicalization of GitHub payloads into CanonicalEvent.

Every supported source shape (webhook payloads, commit listings, search
timeline items) is wrapped in a CanonicalizeInput tagged with an InputKind
and dispatched through a table that must cover every kind. The result is a
CanonicalEvent, or None when the payload is not actionable (unsupported
action, no attributable actor, no usable timestamp or URL).

Pure functions only: no I/O, no clock.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from ...models import (
    CanonicalActor,
    CanonicalEvent,
    CanonicalMetrics,
    CanonicalRepo,
    EventType,
)
from .timeline import TimelineNode

__all__ = [
    "TEXT_LIMIT",
    "CanonicalizeInput",
    "InputKind",
    "canonicalize",
    "commit_from_api",
    "expand_push",
    "inputs_for_webhook",
    "parse_timestamp",
]

logger = logging.getLogger("gitpulse.github.canonicalize")

TEXT_LIMIT = 512
ELLIPSIS = "…"
DASH = "–"

_WHITESPACE_RE = re.compile(r"\s+")


class InputKind(str, Enum):
    """Supported source shapes."""

    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"
    ISSUES = "issues"
    ISSUE_COMMENT = "issue_comment"
    COMMIT = "commit"
    TIMELINE = "timeline"


@dataclass(frozen=True)
class CanonicalizeInput:
    """One source payload tagged with its kind.

    Attributes:
        kind: Which canonicalizer handles the payload
        payload: Raw webhook payload, commit dict, or None for timeline items
        repository: Owning repository payload (commit inputs)
        item: Timeline node (timeline inputs)
        repo_full_name: owner/name of the repository (timeline inputs)
    """

    kind: InputKind
    payload: dict[str, Any] | None = None
    repository: dict[str, Any] | None = None
    item: TimelineNode | None = None
    repo_full_name: str | None = None

    @classmethod
    def webhook(cls, kind: InputKind, payload: dict[str, Any]) -> "CanonicalizeInput":
        return cls(kind=kind, payload=payload)

    @classmethod
    def commit(
        cls, commit: dict[str, Any], repository: dict[str, Any] | None
    ) -> "CanonicalizeInput":
        return cls(kind=InputKind.COMMIT, payload=commit, repository=repository)

    @classmethod
    def timeline(cls, item: TimelineNode, repo_full_name: str) -> "CanonicalizeInput":
        return cls(kind=InputKind.TIMELINE, item=item, repo_full_name=repo_full_name)


# =============================================================================
# Text and value helpers
# =============================================================================


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def truncate_text(value: str) -> str:
    if len(value) <= TEXT_LIMIT:
        return value
    return value[: TEXT_LIMIT - 1] + ELLIPSIS


def join_parts(parts: list[str | None]) -> str:
    return " ".join(p for p in parts if p and p.strip()).strip()


def compact(values: dict[str, Any]) -> dict[str, Any]:
    """Drop None values."""
    return {k: v for k, v in values.items() if v is not None}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_timestamp(value: Any) -> int | None:
    """Parse an ISO 8601 string (or pass through epoch ms) to epoch ms.

    Returns:
        Epoch milliseconds, or None for empty/unparsable values.
    """
    if not value:
        return None
    if _is_number(value):
        return int(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def extract_metrics(additions: Any, deletions: Any, files_changed: Any) -> CanonicalMetrics | None:
    metrics = CanonicalMetrics(
        additions=additions if _is_number(additions) else None,
        deletions=deletions if _is_number(deletions) else None,
        files_changed=files_changed if _is_number(files_changed) else None,
    )
    return metrics if metrics.to_dict() else None


def format_metrics(metrics: CanonicalMetrics | None) -> str | None:
    if metrics is None:
        return None
    parts = []
    if metrics.additions is not None:
        parts.append(f"+{metrics.additions}")
    if metrics.deletions is not None:
        parts.append(f"-{metrics.deletions}")
    if metrics.files_changed is not None:
        parts.append(f"{metrics.files_changed} files")
    return f"({', '.join(parts)})" if parts else None


def _titled(title: Any) -> str | None:
    return f"{DASH} {collapse_whitespace(title)}" if title else None


def _snippet(body: Any, limit: int) -> str | None:
    return f"{DASH} {collapse_whitespace(body)[:limit]}" if body else None


def normalize_repo(repo: dict[str, Any] | None) -> CanonicalRepo | None:
    if not repo:
        return None
    owner = repo.get("owner") or {}
    full_name = repo.get("full_name")
    if not full_name and owner.get("login") and repo.get("name"):
        full_name = f"{owner['login']}/{repo['name']}"
    if not full_name:
        return None
    return CanonicalRepo(
        full_name=full_name,
        gh_id=repo.get("id") if _is_number(repo.get("id")) else None,
        node_id=repo.get("node_id"),
    )


def normalize_actor(user: dict[str, Any] | None) -> CanonicalActor | None:
    """Resolve an actor: login, then username, then display name, then email local-part."""
    if not user:
        return None
    name = user.get("name")
    email = user.get("email")
    login = _first(
        user.get("login"),
        user.get("username"),
        name.strip() if isinstance(name, str) else None,
        email.split("@")[0] if isinstance(email, str) else None,
    )
    if not login:
        return None
    gh_id = user.get("id")
    return CanonicalActor(
        login=login,
        gh_id=gh_id if isinstance(gh_id, int) and not isinstance(gh_id, bool) else None,
        node_id=user.get("node_id"),
        name=name,
        avatar_url=user.get("avatar_url"),
    )


def _repo_url(payload: dict[str, Any]) -> str | None:
    return (payload.get("repository") or {}).get("html_url")


# =============================================================================
# Per-kind canonicalizers
# =============================================================================


def _pull_request(source: CanonicalizeInput) -> CanonicalEvent | None:
    payload = source.payload or {}
    pr = payload.get("pull_request") or {}
    repo = normalize_repo(payload.get("repository"))
    actor = normalize_actor(payload.get("sender") or pr.get("user"))
    if repo is None or actor is None:
        return None

    action = payload.get("action")
    if action in ("opened", "reopened", "ready_for_review"):
        event_type, verb = EventType.PR_OPENED, "opened"
        ts = parse_timestamp(_first(pr.get("created_at"), pr.get("updated_at")))
    elif action == "closed" and pr.get("merged"):
        event_type, verb = EventType.PR_MERGED, "merged"
        ts = parse_timestamp(
            _first(pr.get("merged_at"), pr.get("closed_at"), pr.get("updated_at"))
        )
    elif action == "closed":
        event_type, verb = EventType.PR_CLOSED, "closed"
        ts = parse_timestamp(_first(pr.get("closed_at"), pr.get("updated_at")))
    else:
        return None

    source_url = _first(pr.get("html_url"), pr.get("url"), _repo_url(payload))
    if ts is None or not source_url:
        return None

    metrics = extract_metrics(pr.get("additions"), pr.get("deletions"), pr.get("changed_files"))
    text = truncate_text(
        join_parts(
            [
                f"PR #{pr.get('number')}",
                _titled(pr.get("title")),
                f"{verb} by {actor.login}",
                format_metrics(metrics),
            ]
        )
    )
    return CanonicalEvent(
        type=event_type,
        repo=repo,
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=source_url,
        metrics=metrics,
        metadata=compact(
            {
                "number": pr.get("number"),
                "title": pr.get("title"),
                "merged": pr.get("merged"),
                "state": pr.get("state"),
                "base_branch": (pr.get("base") or {}).get("ref"),
                "head_branch": (pr.get("head") or {}).get("ref"),
            }
        ),
        gh_id=str(pr["id"]) if pr.get("id") else None,
        gh_node_id=pr.get("node_id"),
    )


def _pull_request_review(source: CanonicalizeInput) -> CanonicalEvent | None:
    payload = source.payload or {}
    if payload.get("action") != "submitted":
        return None
    review = payload.get("review") or {}
    pr = payload.get("pull_request") or {}
    repo = normalize_repo(payload.get("repository"))
    actor = normalize_actor(review.get("user"))
    if repo is None or actor is None:
        return None

    ts = parse_timestamp(
        _first(review.get("submitted_at"), review.get("submittedAt"), pr.get("updated_at"))
    )
    source_url = _first(
        review.get("html_url"),
        review.get("pull_request_url"),
        pr.get("html_url"),
        _repo_url(payload),
    )
    if ts is None or not source_url:
        return None

    state = review.get("state")
    text = truncate_text(
        join_parts(
            [
                f"Review on PR #{pr.get('number')}",
                f"by {actor.login}",
                f"[{state}]" if state else None,
                _snippet(review.get("body"), 160),
            ]
        )
    )
    return CanonicalEvent(
        type=EventType.REVIEW_SUBMITTED,
        repo=repo,
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=source_url,
        metadata=compact(
            {"pr_number": pr.get("number"), "review_id": review.get("id"), "state": state}
        ),
        gh_id=str(review["id"]) if review.get("id") else None,
        gh_node_id=review.get("node_id"),
    )


def _issue(source: CanonicalizeInput) -> CanonicalEvent | None:
    payload = source.payload or {}
    issue = payload.get("issue") or {}
    repo = normalize_repo(payload.get("repository"))
    actor = normalize_actor(payload.get("sender") or issue.get("user"))
    if repo is None or actor is None:
        return None

    action = payload.get("action")
    if action == "closed":
        event_type, verb = EventType.ISSUE_CLOSED, "closed"
        ts = parse_timestamp(_first(issue.get("closed_at"), issue.get("updated_at")))
    elif action in ("opened", "reopened"):
        event_type, verb = EventType.ISSUE_OPENED, "opened"
        ts = parse_timestamp(_first(issue.get("created_at"), issue.get("updated_at")))
    else:
        return None

    source_url = _first(issue.get("html_url"), issue.get("url"), _repo_url(payload))
    if ts is None or not source_url:
        return None

    text = truncate_text(
        join_parts(
            [
                f"Issue #{issue.get('number')}",
                _titled(issue.get("title")),
                f"{verb} by {actor.login}",
            ]
        )
    )
    return CanonicalEvent(
        type=event_type,
        repo=repo,
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=source_url,
        metadata=compact(
            {
                "issue_number": issue.get("number"),
                "is_pull_request": bool(issue.get("pull_request")),
                "state": issue.get("state"),
            }
        ),
        gh_id=str(issue["id"]) if issue.get("id") else None,
        gh_node_id=issue.get("node_id"),
    )


def _issue_comment(source: CanonicalizeInput) -> CanonicalEvent | None:
    payload = source.payload or {}
    if payload.get("action") not in ("created", "edited"):
        return None
    comment = payload.get("comment") or {}
    issue = payload.get("issue") or {}
    repo = normalize_repo(payload.get("repository"))
    actor = normalize_actor(comment.get("user") or payload.get("sender"))
    if repo is None or actor is None:
        return None

    ts = parse_timestamp(_first(comment.get("updated_at"), comment.get("created_at")))
    source_url = _first(comment.get("html_url"), comment.get("url"), _repo_url(payload))
    if ts is None or not source_url:
        return None

    target = "pull request" if issue.get("pull_request") else "issue"
    text = truncate_text(
        join_parts(
            [
                f"Comment on {target} #{issue.get('number')}",
                f"by {actor.login}",
                _snippet(comment.get("body"), 200),
            ]
        )
    )
    return CanonicalEvent(
        type=EventType.ISSUE_COMMENT,
        repo=repo,
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=source_url,
        metadata=compact(
            {
                "issue_number": issue.get("number"),
                "is_pull_request": bool(issue.get("pull_request")),
                "comment_id": comment.get("id"),
            }
        ),
        gh_id=str(comment["id"]) if comment.get("id") else None,
        gh_node_id=comment.get("node_id"),
    )


def _commit(source: CanonicalizeInput) -> CanonicalEvent | None:
    commit = source.payload or {}
    repo = normalize_repo(source.repository)
    actor = normalize_actor(commit.get("author") or commit.get("committer"))
    if repo is None or actor is None:
        return None

    ts = parse_timestamp(
        _first(
            commit.get("timestamp"),
            (commit.get("author") or {}).get("date"),
            (commit.get("committer") or {}).get("date"),
        )
    )
    source_url = _first(
        commit.get("html_url"), commit.get("url"), (source.repository or {}).get("html_url")
    )
    if ts is None or not source_url:
        return None

    sha = _first(commit.get("sha"), commit.get("id"))
    stats = commit.get("stats") or {}
    metrics = extract_metrics(
        stats.get("additions"), stats.get("deletions"), stats.get("files_changed")
    )
    text = truncate_text(
        join_parts(
            [
                f"Commit {sha[:7] if sha else ''}".strip(),
                f"by {actor.login}",
                _snippet(commit.get("message"), 200),
                format_metrics(metrics),
            ]
        )
    )
    return CanonicalEvent(
        type=EventType.COMMIT,
        repo=repo,
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=source_url,
        metrics=metrics,
        metadata=compact({"sha": sha, "message": commit.get("message")}),
        gh_id=sha,
        gh_node_id=commit.get("node_id"),
    )


def _timeline(source: CanonicalizeInput) -> CanonicalEvent | None:
    item = source.item
    if item is None or not source.repo_full_name:
        return None

    actor = None
    if item.actor is not None:
        actor = normalize_actor(
            {"id": item.actor.id, "login": item.actor.login, "node_id": item.actor.node_id}
        )
    if actor is None:
        return None

    ts = parse_timestamp(item.updated_at)
    if ts is None or not item.url:
        return None

    is_pr = item.typename == "PullRequest"
    closed = (item.state or "").lower() == "closed"
    if is_pr:
        event_type = EventType.PR_CLOSED if closed else EventType.PR_OPENED
    else:
        event_type = EventType.ISSUE_CLOSED if closed else EventType.ISSUE_OPENED

    number = item.number if item.number is not None else ""
    text = truncate_text(
        join_parts(
            [
                f"{'PR' if is_pr else 'Issue'} #{number}".strip(),
                _titled(item.title),
                f"{'updated' if closed else 'recorded'} by {actor.login}",
            ]
        )
    )
    return CanonicalEvent(
        type=event_type,
        repo=CanonicalRepo(full_name=source.repo_full_name),
        actor=actor,
        timestamp=ts,
        canonical_text=text,
        source_url=item.url,
        metadata=compact({"item_id": item.id, "state": item.state, "timeline": True}),
        gh_id=item.id,
        gh_node_id=item.id,
    )


_CANONICALIZERS: dict[InputKind, Callable[[CanonicalizeInput], CanonicalEvent | None]] = {
    InputKind.PULL_REQUEST: _pull_request,
    InputKind.PULL_REQUEST_REVIEW: _pull_request_review,
    InputKind.ISSUES: _issue,
    InputKind.ISSUE_COMMENT: _issue_comment,
    InputKind.COMMIT: _commit,
    InputKind.TIMELINE: _timeline,
}

_unhandled = set(InputKind) - set(_CANONICALIZERS)
if _unhandled:
    raise ImportError(f"No canonicalizer registered for {sorted(k.value for k in _unhandled)}")


def canonicalize(source: CanonicalizeInput) -> CanonicalEvent | None:
    """Map one tagged source payload to a CanonicalEvent.

    Args:
        source: Tagged input

    Returns:
        CanonicalEvent, or None if the payload is not actionable
    """
    event = _CANONICALIZERS[source.kind](source)
    if event is None:
        logger.debug("canonicalize_dropped", extra={"kind": source.kind.value})
    return event


# =============================================================================
# Source adapters
# =============================================================================


def expand_push(payload: dict[str, Any]) -> list[CanonicalizeInput]:
    """Expand a push webhook into one commit input per pushed commit.

    Commit timestamps are made strictly increasing in push order, so commits
    sharing a timestamp are offset by their index (1 ms each).

    Args:
        payload: push webhook payload

    Returns:
        Commit inputs in push order
    """
    repository = payload.get("repository")
    fallback = _first(
        (payload.get("head_commit") or {}).get("timestamp"),
        (repository or {}).get("pushed_at"),
    )
    inputs: list[CanonicalizeInput] = []
    previous: int | None = None
    for commit in payload.get("commits") or []:
        ts = parse_timestamp(_first(commit.get("timestamp"), fallback))
        if ts is not None:
            if previous is not None and ts <= previous:
                ts = previous + 1
            previous = ts
        inputs.append(
            CanonicalizeInput.commit(
                {**commit, "timestamp": ts if ts is not None else commit.get("timestamp")},
                repository,
            )
        )
    return inputs


def commit_from_api(item: dict[str, Any]) -> dict[str, Any]:
    """Flatten a REST commit listing item into the commit input shape.

    The listing nests git metadata under ``commit``; the top-level
    ``author``/``committer`` are the linked GitHub users (or null).
    """
    git = item.get("commit") or {}

    def person(role: str) -> dict[str, Any] | None:
        merged = {**(git.get(role) or {}), **(item.get(role) or {})}
        return merged or None

    commit: dict[str, Any] = {
        "sha": item.get("sha"),
        "node_id": item.get("node_id"),
        "message": git.get("message"),
        "html_url": item.get("html_url"),
        "url": item.get("url"),
        "author": person("author"),
        "committer": person("committer"),
        "timestamp": (git.get("author") or {}).get("date"),
    }
    stats = item.get("stats")
    if stats:
        commit["stats"] = {
            "additions": stats.get("additions"),
            "deletions": stats.get("deletions"),
            "files_changed": len(item["files"]) if item.get("files") is not None else None,
        }
    return commit


_WEBHOOK_KINDS = {
    "pull_request": InputKind.PULL_REQUEST,
    "pull_request_review": InputKind.PULL_REQUEST_REVIEW,
    "issues": InputKind.ISSUES,
    "issue_comment": InputKind.ISSUE_COMMENT,
}


def inputs_for_webhook(event_kind: str, payload: dict[str, Any]) -> list[CanonicalizeInput]:
    """Build canonicalizer inputs for a webhook delivery.

    Returns:
        Inputs to canonicalize; empty for unsupported event kinds.
    """
    if event_kind == "push":
        return expand_push(payload)
    kind = _WEBHOOK_KINDS.get(event_kind)
    if kind is None:
        return []
    return [CanonicalizeInput.webhook(kind, payload)]
