"""Per-user site roots and contained path resolution."""

import os
import posixpath
import pwd
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Protocol

from user_sites.domain.errors import NoSite, NotFound, PathTraversal, UnknownUser

SITE_DIRECTORY_NAME = "www"


class HomeLookup(Protocol):
    """Maps usernames to home directories without caching."""

    def home_for(self, username: str) -> Optional[Path]:
        """Return the user's home directory or None when unknown."""

    def usernames(self) -> Iterator[str]:
        """Yield every username known to the lookup."""


class PasswdHomes:
    """Home directories taken from the system password database."""

    def home_for(self, username: str) -> Optional[Path]:
        try:
            entry = pwd.getpwnam(username)
        except KeyError:
            return None
        if not entry.pw_dir:
            return None
        return Path(entry.pw_dir)

    def usernames(self) -> Iterator[str]:
        seen = set()
        for entry in pwd.getpwall():
            if entry.pw_name not in seen:
                seen.add(entry.pw_name)
                yield entry.pw_name


class HomeRoot:
    """Home directories laid out as ``<root>/<username>``."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    def home_for(self, username: str) -> Optional[Path]:
        if not _is_plain_component(username):
            return None
        home = self.root / username
        return home if home.is_dir() else None

    def usernames(self) -> Iterator[str]:
        try:
            children = list(self.root.iterdir())
        except OSError:
            return
        for child in children:
            if child.is_dir():
                yield child.name


@dataclass(frozen=True)
class ResolvedPath:
    """A filesystem location proven to sit inside a user's site root."""

    username: str
    site_root: Path
    path: Path
    is_directory: bool
    url_path: str

    @property
    def base_href(self) -> str:
        """Slash-terminated URL of the directory this path denotes or sits in."""
        if self.is_directory:
            return self.url_path.rstrip("/") + "/"
        return self.url_path.rsplit("/", 1)[0] + "/"


def _is_plain_component(name: str) -> bool:
    return bool(name) and name not in {".", ".."} and "/" not in name and "\x00" not in name


def is_contained(root: Path, target: Path) -> bool:
    """Return True when ``target`` is ``root`` or one of its descendants."""
    return target == root or root in target.parents


def contained_file(path: Path, site_root: Path) -> Optional[Path]:
    """Resolve ``path`` and return it only if it is a regular file in the site.

    Fixed-name files the server looks up next to a request (index pages,
    handlers, whitelists, listing customizations) go through here so a
    symbolic link cannot pull content or programs in from outside the site.
    """
    try:
        target = path.resolve()
    except (OSError, RuntimeError):
        return None
    if not is_contained(site_root, target) or not target.is_file():
        return None
    return target


def resolve_site_root(username: str, homes: HomeLookup) -> Path:
    """Return the canonical ``~username/www`` directory for a user."""
    if not _is_plain_component(username):
        raise UnknownUser(username)
    home = homes.home_for(username)
    if home is None:
        raise UnknownUser(username)
    site_root = home / SITE_DIRECTORY_NAME
    if not site_root.is_dir():
        raise NoSite(username)
    return site_root.resolve()


def normalize_request_path(user_path: str) -> str:
    """Collapse ``.`` and ``..`` segments, refusing to climb above the root."""
    if "\x00" in user_path:
        raise PathTraversal(user_path)
    relative_part = user_path.lstrip("/")
    if not relative_part:
        return ""
    normalized = posixpath.normpath(relative_part)
    if normalized == ".":
        return ""
    if normalized == ".." or normalized.startswith("../"):
        raise PathTraversal(user_path)
    return normalized


def resolve_request_path(
    username: str, user_path: str, homes: HomeLookup
) -> ResolvedPath:
    """Resolve ``/<username>/<user_path>`` to a contained, existing location.

    Containment is checked on the fully resolved path so symbolic links that
    lead out of the site root are rejected even when the URL looks harmless.
    """
    site_root = resolve_site_root(username, homes)
    relative_part = normalize_request_path(user_path)

    target = (site_root / relative_part).resolve()
    if not is_contained(site_root, target):
        raise PathTraversal(user_path)

    if target.is_dir():
        is_directory = True
    elif target.is_file():
        is_directory = False
    else:
        raise NotFound(user_path)

    url_path = f"/{username}/{relative_part}" if relative_part else f"/{username}/"
    return ResolvedPath(username, site_root, target, is_directory, url_path)
