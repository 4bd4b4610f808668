"""GitHub repository URL validation and identity."""

import hashlib
import re
import urllib.parse
from dataclasses import dataclass

from codewiki.errors import ValidationError

GITHUB_HOSTS = {"github.com", "www.github.com"}
_SSH_PREFIX = "git@github.com:"

# GitHub owner/repository name character set
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class RepoRef:
    """Validated identity of a public GitHub repository."""

    owner: str
    name: str

    @property
    def repo_id(self) -> str:
        return repo_id_for(self.owner, self.name)

    @property
    def canonical_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def repo_id_for(owner: str, name: str) -> str:
    """Stable id derived from owner and name (case-insensitive, like GitHub)."""
    key = f"{owner.lower()}/{name.lower()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def parse_repo_url(repo_url: str) -> RepoRef:
    """
    Parse a GitHub repository URL into owner and name.

    Accepts https/http URLs and the ``git@github.com:owner/name`` form, with or
    without a trailing ``.git`` or slash. Extra path segments such as
    ``/tree/main`` are ignored.

    Raises:
        ValidationError: for other hosts, malformed paths, or URLs that look
            private (embedded credentials, query strings, fragments).
    """
    if not repo_url or not repo_url.strip():
        raise ValidationError("repo_url is required")

    trimmed = repo_url.strip()

    if trimmed.startswith(_SSH_PREFIX):
        path = trimmed[len(_SSH_PREFIX):]
    else:
        parsed = urllib.parse.urlsplit(trimmed)
        if parsed.scheme not in ("https", "http"):
            raise ValidationError(f"Unsupported repository URL: {repo_url}")
        if parsed.username or parsed.password or "@" in parsed.netloc:
            raise ValidationError("Repository URLs must not embed credentials")
        if parsed.query or parsed.fragment:
            raise ValidationError("Repository URLs must not carry query strings or fragments")
        host = (parsed.hostname or "").lower()
        try:
            port = parsed.port
        except ValueError:
            raise ValidationError(f"Invalid repository URL: {repo_url}")
        if host not in GITHUB_HOSTS or port is not None:
            raise ValidationError(f"Only public GitHub repositories are supported: {repo_url}")
        path = parsed.path

    segments = [s for s in path.strip("/").split("/") if s]
    if len(segments) < 2:
        raise ValidationError(f"Repository URL must name an owner and a repository: {repo_url}")

    owner, name = segments[0], segments[1]
    if name.endswith(".git"):
        name = name[: -len(".git")]

    for segment in (owner, name):
        if not segment or not _SEGMENT_RE.match(segment) or segment in (".", ".."):
            raise ValidationError(f"Invalid repository path in URL: {repo_url}")

    return RepoRef(owner=owner, name=name)
