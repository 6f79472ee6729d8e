#!/usr/bin/env python3
"""
GitHub Issue Comments → Misskey Notes
=====================================
Drains the comments of one GitHub issue into notes on a Misskey server.

For every comment (oldest first):
  1. A leading  <!-- { ...json... } -->  block is parsed as note options
     (e.g. {"visibility": "home", "cw": "spoilers"}) and removed.
  2. Inline images  ![alt](url)  and  <img src="url">  are downloaded,
     uploaded to the Misskey drive and attached to the note natively.
  3. The note is created, THEN the comment is deleted.

The issue is re-read until it is empty or MAX_ATTEMPTS batches have run.
Any error stops the run: a comment is never skipped.

Usage (all configuration comes from the environment):
    GITHUB_REPOSITORY=owner/repo ISSUE_NUMBER=1 GITHUB_TOKEN=... \\
    MISSKEY_SERVER=misskey.io MISSKEY_API_TOKEN=... \\
        python github_misskey_sync.py

    DRY_RUN=true  — read everything, write nothing.
"""

import sys
import os
import io
import re
import json
import hashlib
import threading
from concurrent.futures import Future
from typing import Callable, Optional
from urllib.parse import urlsplit

import requests

# ═════════════════════════════════════════════════════════════════════════════
#  CONFIGURATION DEFAULTS  —  overridden by environment variables
# ═════════════════════════════════════════════════════════════════════════════

GITHUB_API_URL    = "https://api.github.com"
GITHUB_SERVER_URL = "https://github.com"

COMMENTS_PER_PAGE = 100

# Outer loop budget: how many non-empty batches may run before giving up
DEFAULT_MAX_ATTEMPTS = 5
DRY_RUN_MAX_ATTEMPTS = 1

REQUEST_TIMEOUT = 60
UPLOAD_TIMEOUT  = 120

EXIT_OK        = 0
EXIT_FAILED    = 1
EXIT_EXHAUSTED = 2
# ═════════════════════════════════════════════════════════════════════════════


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class SyncError(Exception):
    """Base class for every condition that aborts a run."""


class ConfigError(SyncError):
    pass


class MalformedDirectiveError(SyncError):
    pass


class DownloadError(SyncError):
    def __init__(self, url: str, status: Optional[int] = None,
                 reason: str = "") -> None:
        self.url    = url
        self.status = status
        detail = f"HTTP {status}" if status is not None else (reason or "transport error")
        super().__init__(f"Download failed ({detail}): {url}")


class UploadError(SyncError):
    pass


class PostCreationError(SyncError):
    pass


class CommentFetchError(SyncError):
    pass


class CommentDeletionError(SyncError):
    pass


class RetryBudgetExhausted(SyncError):
    def __init__(self, attempts: int, remaining: int) -> None:
        self.attempts  = attempts
        self.remaining = remaining
        super().__init__(
            f"The migration was run {attempts} time(s), "
            f"but {remaining} comment(s) still exist."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def _first_line(text: Optional[str], limit: int = 60) -> str:
    stripped = (text or "").strip()
    line = stripped.splitlines()[0] if stripped else ""
    return line if len(line) <= limit else line[:limit - 1] + "…"


def _origin(url: str) -> tuple:
    """(scheme, host, port) with default ports filled in, for origin checks."""
    parts  = urlsplit(url)
    scheme = (parts.scheme or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None
    if port is None:
        port = {"http": 80, "https": 443}.get(scheme)
    return scheme, (parts.hostname or "").lower(), port


def same_origin(url: str, other: str) -> bool:
    a = _origin(url)
    return bool(a[1]) and a == _origin(other)


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

def _require(environ, name: str) -> str:
    value = (environ.get(name) or "").strip()
    if not value:
        raise ConfigError(f"Environment variable {name} is required.")
    return value


def load_config(environ=None) -> dict:
    """Build the run configuration from environment variables."""
    env = os.environ if environ is None else environ

    dry_run = (env.get("DRY_RUN") or "").strip().lower() == "true"

    repository = _require(env, "GITHUB_REPOSITORY")
    owner, _, repo = repository.partition("/")
    if not owner or not repo or "/" in repo:
        raise ConfigError(f"GITHUB_REPOSITORY must look like owner/repo, got {repository!r}.")

    issue_raw = _require(env, "ISSUE_NUMBER")
    try:
        issue_number = int(issue_raw)
        if issue_number <= 0:
            raise ValueError
    except ValueError:
        raise ConfigError(f"ISSUE_NUMBER must be a positive integer, got {issue_raw!r}.")

    # PERSONAL_ACCESS_TOKEN names the variable that holds the token
    pat_var = (env.get("PERSONAL_ACCESS_TOKEN") or "").strip()
    if pat_var:
        github_token = _require(env, pat_var)
    else:
        github_token = _require(env, "GITHUB_TOKEN")

    misskey_server = _require(env, "MISSKEY_SERVER")
    misskey_token  = (env.get("MISSKEY_API_TOKEN") or "").strip()
    if not misskey_token and not dry_run:
        raise ConfigError("Environment variable MISSKEY_API_TOKEN is required.")

    default_attempts = DRY_RUN_MAX_ATTEMPTS if dry_run else DEFAULT_MAX_ATTEMPTS
    attempts_raw = (env.get("MAX_ATTEMPTS") or "").strip()
    try:
        max_attempts = int(attempts_raw) if attempts_raw else default_attempts
        if max_attempts < 1:
            raise ValueError
    except ValueError:
        raise ConfigError(f"MAX_ATTEMPTS must be a positive integer, got {attempts_raw!r}.")

    return {
        "owner":          owner,
        "repo":           repo,
        "issue_number":   issue_number,
        "github_token":   github_token,
        "github_api_url": (env.get("GITHUB_API_URL") or GITHUB_API_URL).rstrip("/"),
        "github_server":  (env.get("GITHUB_SERVER_URL") or GITHUB_SERVER_URL).rstrip("/"),
        "misskey_server": misskey_server,
        "misskey_token":  misskey_token,
        "dry_run":        dry_run,
        "max_attempts":   max_attempts,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Directive block  —  <!-- {"visibility": "home"} -->
# ─────────────────────────────────────────────────────────────────────────────

_DIRECTIVE_PATTERN = re.compile(r'\A<!--(.*?)-->', re.DOTALL)


def parse_directives(body: Optional[str]) -> tuple:
    """
    Split a leading JSON directive block off a comment body.
    Returns (remaining_body, options); options is {} when there is no block.
    Raises MalformedDirectiveError when the block is not a JSON object.
    """
    text = (body or "").strip()
    m = _DIRECTIVE_PATTERN.match(text)
    if not m:
        return text, {}
    # Any leading comment opening with "{" is a directive, well-formed or not
    raw = m.group(1).strip()
    if not raw.startswith("{"):
        return text, {}
    try:
        options = json.loads(raw)
    except ValueError as exc:
        raise MalformedDirectiveError(f"Directive block is not valid JSON: {exc}")
    if not isinstance(options, dict):
        raise MalformedDirectiveError("Directive block must be a JSON object.")
    return text[m.end():].strip(), options


# ─────────────────────────────────────────────────────────────────────────────
# File fetcher / namer
# ─────────────────────────────────────────────────────────────────────────────

def download_file(url: str, token: Optional[str] = None,
                  trusted_origin: str = GITHUB_SERVER_URL) -> bytes:
    """
    Download an attachment. The bearer token is only sent to the tracker's
    own origin, never to third-party image hosts.
    """
    headers = {}
    if token and same_origin(url, trusted_origin):
        headers["Authorization"] = f"Bearer {token}"
    try:
        resp = requests.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.exceptions.RequestException as exc:
        raise DownloadError(url, None, str(exc)[:120])
    if not 200 <= resp.status_code < 300:
        raise DownloadError(url, resp.status_code)
    return resp.content


def content_name(url: str) -> str:
    """Deterministic 64-char hex name for a locator."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


# ─────────────────────────────────────────────────────────────────────────────
# Resource cache  —  one download per URL per run
# ─────────────────────────────────────────────────────────────────────────────

class ResourceCache:
    def __init__(self, fetch: Callable[[str], bytes]) -> None:
        self._fetch   = fetch
        self._entries: dict = {}
        self._lock    = threading.Lock()
        self.downloads = 0

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, url: str) -> bytes:
        with self._lock:
            future = self._entries.get(url)
            owner  = future is None
            if owner:
                # Placeholder goes in before the download starts
                future = Future()
                self._entries[url] = future
                self.downloads += 1
        if owner:
            print(f"  INFO  downloading: {url[:80]}")
            try:
                content = self._fetch(url)
            except BaseException as exc:
                future.set_exception(exc)
                raise
            future.set_result(content)
            print(f"  INFO  downloaded {len(content)} bytes")
            return content
        print(f"  SKIP  cached: {url[:80]}")
        return future.result()


# ─────────────────────────────────────────────────────────────────────────────
# Attachment extraction
# ─────────────────────────────────────────────────────────────────────────────

class AttachmentReference:
    __slots__ = ("matched_text", "url", "name", "content")

    def __init__(self, matched_text: str, url: str, name: str, content: bytes) -> None:
        self.matched_text = matched_text
        self.url          = url
        self.name         = name
        self.content      = content

    def __repr__(self) -> str:
        return f"AttachmentReference(url={self.url!r}, name={self.name[:12]!r}…)"


_ATTACHMENT_PATTERN = re.compile(
    r'(?P<md>!\[[^\]]*\]\(\s*<?(?P<md_url>https?://[^\s)>]+)>?(?:\s+"[^"]*")?\s*\))'
    r'|(?P<html><img\b(?P<attrs>[^>]*?)\ssrc\s*=\s*(?P<q>["\'])(?P<html_url>https?://[^"\']+)(?P=q)[^>]*>)',
    re.IGNORECASE,
)
_EXCLUDE_ATTR_PATTERN = re.compile(r'\sdata-exclude\b', re.IGNORECASE)
_TRAILING_BREAK       = re.compile(r'\r?\n')


def _is_code_quoted(body: str, start: int, end: int) -> bool:
    before = body[start - 1] if start > 0 else ""
    after  = body[end] if end < len(body) else ""
    return before == "`" or after == "`"


def extract_attachments(body: str, cache: ResourceCache) -> tuple:
    """
    Pull image references out of `body` (left to right), resolving each URL
    through `cache`. Returns (cleaned_body, [AttachmentReference, …]).
    """
    references: list = []
    pieces:     list = []
    last_end = 0
    for m in _ATTACHMENT_PATTERN.finditer(body):
        if _is_code_quoted(body, m.start(), m.end()):
            continue
        if m.group("html") and _EXCLUDE_ATTR_PATTERN.search(m.group(0)):
            continue
        url = m.group("md_url") or m.group("html_url")
        content = cache.resolve(url)
        references.append(AttachmentReference(m.group(0), url, content_name(url), content))

        pieces.append(body[last_end:m.start()])
        last_end = m.end()
        brk = _TRAILING_BREAK.match(body, last_end)
        if brk:
            last_end = brk.end()
    pieces.append(body[last_end:])
    return "".join(pieces).strip(), references


# ─────────────────────────────────────────────────────────────────────────────
# Misskey client
# ─────────────────────────────────────────────────────────────────────────────

class MisskeyClient:
    def __init__(self, server: str, api_token: str) -> None:
        host = re.sub(r'^https?://', '', server.strip()).rstrip("/")
        self.base   = f"https://{host}/api"
        self._token = api_token

    def _request(self, endpoint: str, error_cls, *, json_body: Optional[dict] = None,
                 data: Optional[dict] = None, files: Optional[dict] = None,
                 timeout: int = REQUEST_TIMEOUT) -> Optional[dict]:
        url = f"{self.base}/{endpoint.lstrip('/')}"
        try:
            if files is not None:
                form = dict(data or {})
                form["i"] = self._token
                resp = requests.post(url, data=form, files=files, timeout=timeout)
            else:
                body = dict(json_body or {})
                body["i"] = self._token
                resp = requests.post(url, json=body, timeout=timeout)
        except requests.exceptions.ConnectionError:
            raise error_cls(f"Connection error: {url}")
        except requests.exceptions.Timeout:
            raise error_cls(f"Timeout: {url}")
        except requests.exceptions.RequestException as exc:
            raise error_cls(f"Request to {url} failed: {exc}")
        if resp.status_code == 401:
            raise error_cls("Misskey authentication failed (401) — check MISSKEY_API_TOKEN.")
        if resp.status_code == 204:
            return None
        if resp.status_code != 200:
            try:
                msg = json.dumps(resp.json())[:400]
            except ValueError:
                msg = resp.text[:400]
            raise error_cls(f"Misskey {resp.status_code} {endpoint}: {msg}")
        try:
            return resp.json() if resp.content else None
        except ValueError:
            raise error_cls(f"Misskey {endpoint} returned a non-JSON body: {resp.text[:200]}")

    def upload_file(self, name: str, content: bytes) -> str:
        """Upload to the drive and return the drive file id."""
        data = self._request(
            "drive/files/create", UploadError,
            data={"name": name},
            files={"file": (name, io.BytesIO(content), "application/octet-stream")},
            timeout=UPLOAD_TIMEOUT,
        )
        file_id = (data or {}).get("id")
        if not file_id:
            raise UploadError(f"Misskey upload of {name} returned no file id.")
        return file_id

    def create_note(self, payload: dict) -> dict:
        data = self._request("notes/create", PostCreationError, json_body=payload)
        note = (data or {}).get("createdNote")
        if not note:
            raise PostCreationError("Misskey notes/create returned no createdNote.")
        return note


# ─────────────────────────────────────────────────────────────────────────────
# GitHub client
# ─────────────────────────────────────────────────────────────────────────────

class GitHubClient:
    def __init__(self, owner: str, repo: str, issue_number: int, token: str,
                 api_url: str = GITHUB_API_URL) -> None:
        self.base         = f"{api_url.rstrip('/')}/repos/{owner}/{repo}"
        self.issue_number = issue_number
        self._auth        = f"Bearer {token}"

    def _request(self, method: str, path: str, error_cls, *,
                 params: Optional[dict] = None, expected=(200,)):
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {
            "Authorization":        self._auth,
            "Accept":               "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        try:
            resp = requests.request(method, url, headers=headers, params=params,
                                    timeout=REQUEST_TIMEOUT)
        except requests.exceptions.ConnectionError:
            raise error_cls(f"Connection error: {url}")
        except requests.exceptions.Timeout:
            raise error_cls(f"Timeout: {url}")
        except requests.exceptions.RequestException as exc:
            raise error_cls(f"Request to {url} failed: {exc}")
        if resp.status_code == 401:
            raise error_cls("GitHub authentication failed (401).")
        if resp.status_code not in expected:
            raise error_cls(f"GitHub {resp.status_code} {method} {path}: {resp.text[:300]}")
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise error_cls(f"GitHub {method} {path} returned a non-JSON body: {resp.text[:200]}")

    def list_comments(self, page: int, per_page: int = COMMENTS_PER_PAGE) -> list:
        data = self._request("GET", f"/issues/{self.issue_number}/comments",
                             CommentFetchError,
                             params={"page": page, "per_page": per_page})
        if not isinstance(data, list):
            raise CommentFetchError(f"Unexpected comment listing for issue #{self.issue_number}.")
        return data

    def delete_comment(self, comment_id) -> None:
        self._request("DELETE", f"/issues/comments/{comment_id}",
                      CommentDeletionError, expected=(204,))


def fetch_all_comments(github: GitHubClient, per_page: int = COMMENTS_PER_PAGE) -> list:
    """Read every comment, oldest first, paginating until a short page."""
    comments: list = []
    page = 1
    while True:
        print(f"  INFO  page {page} ({len(comments)} comment(s) collected)…")
        batch = github.list_comments(page, per_page)
        comments.extend(batch)
        if len(batch) < per_page:
            break
        page += 1
    return comments


# ─────────────────────────────────────────────────────────────────────────────
# Upload + compose
# ─────────────────────────────────────────────────────────────────────────────

def upload_attachments(references: list, misskey: Optional[MisskeyClient],
                       uploaded: dict, dry_run: bool = False) -> list:
    """
    Upload each referenced file once per run, in reading order.
    `uploaded` maps url → drive file id for this run. Returns ordered file ids.
    """
    file_ids: list = []
    for ref in references:
        file_id = uploaded.get(ref.url)
        if file_id is None:
            if dry_run:
                file_id = f"dry-run-file-{len(uploaded) + 1}"
                print(f"  DRY   would upload {ref.name[:16]}… ({len(ref.content)} bytes)")
            else:
                file_id = misskey.upload_file(ref.name, ref.content)
                print(f"  OK    uploaded {ref.name[:16]}…  →  drive file {file_id}")
            uploaded[ref.url] = file_id
        if file_id not in file_ids:
            file_ids.append(file_id)
    return file_ids


def compose_note(text: str, file_ids: list, options: dict) -> dict:
    """Build the notes/create payload. Directive options override defaults."""
    payload: dict = {"text": text or None}
    if file_ids:
        payload["fileIds"] = list(file_ids)
    payload.update(options)
    return payload


# ─────────────────────────────────────────────────────────────────────────────
# Migration driver
# ─────────────────────────────────────────────────────────────────────────────

def migrate_comment(comment: dict, github: Optional[GitHubClient],
                    misskey: Optional[MisskeyClient], cache: ResourceCache,
                    uploaded: dict, dry_run: bool = False) -> dict:
    """Turn one comment into a note, then delete the comment."""
    comment_id = comment.get("id")
    label      = f"comment {comment_id}"

    body, options = parse_directives(comment.get("body"))
    text, references = extract_attachments(body, cache)
    if references:
        print(f"  INFO  {label}  found {len(references)} image(s)")
    file_ids = upload_attachments(references, misskey, uploaded, dry_run)
    payload  = compose_note(text, file_ids, options)

    if dry_run:
        print(f"  DRY   {label}  would post \"{_first_line(text)}\"")
        print(f"  DRY   {label}  would delete the comment")
        return {"id": f"dry-run-note-{comment_id}", **payload}

    note = misskey.create_note(payload)
    print(f"  OK    {label}  →  note {note.get('id', '?')}  |  {_first_line(text, 45)}")
    # Deletion strictly after the note exists: a crash here re-posts, never loses
    github.delete_comment(comment_id)
    print(f"  OK    {label}  deleted")
    return note


def migrate_batch(comments: list, github: Optional[GitHubClient],
                  misskey: Optional[MisskeyClient], cache: ResourceCache,
                  uploaded: dict, dry_run: bool = False) -> list:
    print(f"\n  ── Migrating {len(comments)} comment(s) ──")
    return [migrate_comment(c, github, misskey, cache, uploaded, dry_run)
            for c in comments]


def run(config: dict, github: GitHubClient, misskey: Optional[MisskeyClient],
        fetch: Optional[Callable[[str], bytes]] = None) -> int:
    """
    Fetch → migrate → repeat until the issue has no comments.
    Returns the number of comments migrated; raises SyncError on any failure
    and RetryBudgetExhausted when comments remain after max_attempts batches.
    """
    dry_run      = config.get("dry_run", False)
    max_attempts = config.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
    if fetch is None:
        token  = config.get("github_token")
        origin = config.get("github_server", GITHUB_SERVER_URL)
        fetch  = lambda url: download_file(url, token, origin)

    cache    = ResourceCache(fetch)
    uploaded: dict = {}
    attempts = 0
    migrated = 0

    while True:
        print("\n" + "─" * 80)
        print(f"  Fetching comments of issue #{github.issue_number}…")
        comments = fetch_all_comments(github)
        if not comments:
            print("  ✓ No comments left.")
            return migrated
        if attempts >= max_attempts:
            raise RetryBudgetExhausted(attempts, len(comments))

        migrate_batch(comments, github, misskey, cache, uploaded, dry_run)
        migrated += len(comments)
        attempts += 1

        if dry_run:
            print("  INFO  Dry run: comments are not deleted, so the issue is "
                  "only processed once.")
            return migrated


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def _banner(title: str, width: int = 80) -> None:
    print()
    print("╔" + "═" * (width - 2) + "╗")
    print("║" + title.center(width - 2) + "║")
    print("╚" + "═" * (width - 2) + "╝")


def main(environ=None) -> int:
    _banner("  GITHUB ISSUE COMMENTS → MISSKEY NOTES")
    try:
        config = load_config(environ)
        print(f"\n  Repository:  {config['owner']}/{config['repo']}  "
              f"issue #{config['issue_number']}")
        print(f"  Misskey:     {config['misskey_server']}")
        print(f"  Dry run:     {'yes' if config['dry_run'] else 'no'}")
        print(f"  Attempts:    {config['max_attempts']}")

        github = GitHubClient(config["owner"], config["repo"], config["issue_number"],
                              config["github_token"], config["github_api_url"])
        misskey = None
        if not config["dry_run"]:
            misskey = MisskeyClient(config["misskey_server"], config["misskey_token"])

        migrated = run(config, github, misskey)
    except RetryBudgetExhausted as exc:
        print(f"  FAIL  {exc}", file=sys.stderr)
        return EXIT_EXHAUSTED
    except SyncError as exc:
        print(f"  FAIL  {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_FAILED

    _banner("  Migration complete")
    print(f"\n  Comments migrated: {migrated}\n")
    return EXIT_OK


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nAborted.")
        sys.exit(130)
