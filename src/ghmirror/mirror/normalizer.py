"""
Normalize raw GitHub API / webhook objects into mirror model field dicts.

Only provider-owned fields are returned; local-only columns (user_id,
synced_at, webhook_updated_at, ...) are left to the store. The same
functions serve REST responses and webhook payloads, which share shapes.

Missing required keys raise KeyError, which the pipeline classifies as a
permanent (malformed payload) failure.
"""
import json
from typing import Any, Dict, List, Optional

from ghmirror.timeutil import parse_github_timestamp


def _login(user: Optional[Dict[str, Any]]) -> Optional[str]:
    return (user or {}).get("login")


def _labels_json(labels: Optional[List[Dict[str, Any]]]) -> str:
    return json.dumps([{"name": label.get("name"), "color": label.get("color")} for label in labels or []])


def normalize_organization(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "github_id": int(raw["id"]),
        "login": raw["login"],
        "name": raw.get("name"),
        "description": raw.get("description"),
        "avatar_url": raw.get("avatar_url"),
    }


def normalize_repository(raw: Dict[str, Any]) -> Dict[str, Any]:
    owner = raw.get("owner") or {}
    full_name = raw["full_name"]
    return {
        "github_id": int(raw["id"]),
        "name": raw.get("name") or full_name.split("/", 1)[-1],
        "full_name": full_name,
        "owner": owner.get("login") or full_name.split("/", 1)[0],
        "description": raw.get("description"),
        "html_url": raw.get("html_url"),
        "private": bool(raw.get("private", False)),
        "fork": bool(raw.get("fork", False)),
        "default_branch": raw.get("default_branch") or "main",
        "language": raw.get("language"),
        "stargazers_count": raw.get("stargazers_count") or 0,
        "forks_count": raw.get("forks_count") or 0,
        "open_issues_count": raw.get("open_issues_count") or 0,
        "github_created_at": _timestamp(raw.get("created_at")),
        "github_updated_at": _timestamp(raw.get("updated_at")),
        "github_pushed_at": _timestamp(raw.get("pushed_at")),
    }


def normalize_pull_request(raw: Dict[str, Any]) -> Dict[str, Any]:
    head = raw.get("head") or {}
    base = raw.get("base") or {}
    fields = {
        "github_id": int(raw["id"]),
        "number": int(raw["number"]),
        "title": raw["title"],
        "body": raw.get("body"),
        "state": raw["state"],
        "draft": bool(raw.get("draft", False)),
        "merged": bool(raw.get("merged") or raw.get("merged_at")),
        "author_login": _login(raw.get("user")),
        "head_ref": head.get("ref"),
        "head_sha": head.get("sha"),
        "base_ref": base.get("ref"),
        "html_url": raw.get("html_url"),
        "labels_json": _labels_json(raw.get("labels")),
        "github_created_at": _timestamp(raw.get("created_at")),
        "github_updated_at": _timestamp(raw.get("updated_at")),
        "closed_at": _timestamp(raw.get("closed_at")),
        "merged_at": _timestamp(raw.get("merged_at")),
    }
    # List endpoints omit the diff stats; don't clobber values from a detail fetch.
    for key in ("additions", "deletions", "changed_files"):
        if raw.get(key) is not None:
            fields[key] = raw[key]
    return fields


def normalize_issue(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "github_id": int(raw["id"]),
        "number": int(raw["number"]),
        "title": raw["title"],
        "body": raw.get("body"),
        "state": raw["state"],
        "state_reason": raw.get("state_reason"),
        "author_login": _login(raw.get("user")),
        "html_url": raw.get("html_url"),
        "comments_count": raw.get("comments") or 0,
        "labels_json": _labels_json(raw.get("labels")),
        "github_created_at": _timestamp(raw.get("created_at")),
        "github_updated_at": _timestamp(raw.get("updated_at")),
        "closed_at": _timestamp(raw.get("closed_at")),
    }


def normalize_review(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "github_id": int(raw["id"]),
        "state": str(raw["state"]).upper(),
        "body": raw.get("body"),
        "author_login": _login(raw.get("user")),
        "commit_id": raw.get("commit_id"),
        "html_url": raw.get("html_url"),
        "submitted_at": _timestamp(raw.get("submitted_at")),
    }


def normalize_comment(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "github_id": int(raw["id"]),
        "body": raw.get("body"),
        "author_login": _login(raw.get("user")),
        "path": raw.get("path"),
        "line": raw.get("line"),
        "review_github_id": raw.get("pull_request_review_id"),
        "html_url": raw.get("html_url"),
        "github_created_at": _timestamp(raw.get("created_at")),
        "github_updated_at": _timestamp(raw.get("updated_at")),
    }


def normalize_commit(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Accepts both REST commit objects and push-event commit entries.

    REST:  {"sha", "commit": {"message", "author": {...}}, "author": {"login"}}
    Push:  {"id", "message", "timestamp", "author": {"name", "username"}}
    """
    if "commit" in raw:
        inner = raw["commit"] or {}
        inner_author = inner.get("author") or {}
        return {
            "sha": raw["sha"],
            "message": inner.get("message"),
            "author_name": inner_author.get("name"),
            "author_login": _login(raw.get("author")),
            "html_url": raw.get("html_url"),
            "committed_at": _timestamp(inner_author.get("date")),
        }
    author = raw.get("author") or {}
    return {
        "sha": raw["id"],
        "message": raw.get("message"),
        "author_name": author.get("name"),
        "author_login": author.get("username"),
        "html_url": raw.get("url"),
        "committed_at": _timestamp(raw.get("timestamp")),
    }


def _timestamp(value):
    return parse_github_timestamp(value) if value else None
