"""Generated directory listings for directories without an index."""

import math
import os
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from user_sites.domain.correlation_id import get_logger
from user_sites.domain.html_pages import escape_text, render_page
from user_sites.domain.sandbox import SITE_DIRECTORY_NAME, HomeLookup, contained_file
from user_sites.domain.targets import HANDLER_FILES

INDEX_LOGGER = get_logger("handlers.auto_index")

TITLE_FILE = "title"
HEADER_FILE = "header.html"
FOOTER_FILE = "footer.html"
STYLESHEET_FILE = "styles.css"
CUSTOMIZATION_FILES = frozenset({TITLE_FILE, HEADER_FILE, FOOTER_FILE, STYLESHEET_FILE})
HIDDEN_FILES = CUSTOMIZATION_FILES | HANDLER_FILES

PEOPLE_TITLE = "People"
MODIFIED_FORMAT = "%d/%m/%Y %H:%M:%S"


@dataclass(frozen=True)
class IndexEntry:
    """One visible row of a listing."""

    name: str
    is_directory: bool
    size: int
    modified: float

    @property
    def href(self) -> str:
        """Percent-encoded relative link, slash-terminated for directories."""
        encoded = urllib.parse.quote(self.name, safe="", errors="surrogateescape")
        return encoded + "/" if self.is_directory else encoded

    @property
    def label(self) -> str:
        """Display name, slash-terminated for directories."""
        return self.name + "/" if self.is_directory else self.name


@dataclass(frozen=True)
class Pagination:
    """A 1-based page of ``size`` entries."""

    page: int
    size: int

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> Optional["Pagination"]:
        """Build from ``p`` and ``n``; both must be positive integers."""
        page = _positive_int(query.get("p"))
        size = _positive_int(query.get("n"))
        if page is None or size is None:
            return None
        return cls(page, size)

    def page_count(self, total: int) -> int:
        """Number of pages needed for ``total`` entries."""
        return math.ceil(total / self.size)

    def select(self, entries: list[IndexEntry]) -> list[IndexEntry]:
        """Entries on this page; empty when the page is out of range."""
        start = (self.page - 1) * self.size
        return entries[start : start + self.size]


@dataclass(frozen=True)
class IndexCustomization:
    """Optional per-directory overrides for the generated page."""

    title: Optional[str] = None
    header: Optional[str] = None
    footer: Optional[str] = None
    has_stylesheet: bool = False

    @classmethod
    def load(
        cls, directory: Path, site_root: Optional[Path] = None
    ) -> "IndexCustomization":
        """Read whichever customization files the directory provides.

        Files whose real location is outside ``site_root`` (the directory
        itself by default) are ignored.
        """
        root = (directory if site_root is None else site_root).resolve()
        title = _read_optional(directory / TITLE_FILE, root)
        return cls(
            title=title.strip() if title is not None and title.strip() else None,
            header=_read_optional(directory / HEADER_FILE, root),
            footer=_read_optional(directory / FOOTER_FILE, root),
            has_stylesheet=contained_file(directory / STYLESHEET_FILE, root) is not None,
        )


def _positive_int(value: Optional[str]) -> Optional[int]:
    if value is None or not (value.isascii() and value.isdigit()):
        return None
    number = int(value)
    return number if number > 0 else None


def _read_optional(path: Path, site_root: Path) -> Optional[str]:
    target = contained_file(path, site_root)
    if target is None:
        return None
    try:
        return target.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def list_entries(directory: Path) -> list[IndexEntry]:
    """Visible entries of ``directory`` sorted by name."""
    entries = []
    with os.scandir(directory) as iterator:
        for item in iterator:
            if item.name in HIDDEN_FILES:
                continue
            try:
                stat = item.stat()
                is_directory = item.is_dir()
            except OSError:
                continue
            entries.append(
                IndexEntry(item.name, is_directory, stat.st_size, stat.st_mtime)
            )
    entries.sort(key=lambda entry: entry.name)
    return entries


def _format_entry(entry: IndexEntry) -> str:
    modified = time.strftime(MODIFIED_FORMAT, time.localtime(entry.modified))
    return (
        f'                <li><a href="{entry.href}" data-modified="{modified}" '
        f'data-size="{entry.size}">{escape_text(entry.label)}</a></li>'
    )


def _format_pagination(pagination: Pagination, page_count: int) -> str:
    page, size = pagination.page, pagination.size
    parts = ['            <nav class="pagination">']
    if page > 1:
        parts.append(f'                <a href="?p={page - 1}&amp;n={size}">Prev. Page</a>')
    parts.append(
        "                <form>\n"
        f'                    <span class="page-number" data-num-pages="{page_count}">\n'
        '                        <label for="page-number-input">Page #</label>\n'
        '                        <input id="page-number-input" type="number" name="p" '
        f'value="{page}" min="1" max="{max(page_count, 1)}" size="4"/>\n'
        "                    </span>\n"
        '                    <span class="page-size">\n'
        '                        <label for="page-size-input">Page Size</label>\n'
        '                        <input id="page-size-input" type="number" name="n" '
        f'value="{size}" min="1" size="4"/>\n'
        '                        <input type="submit" value="Go"/>\n'
        "                    </span>\n"
        "                </form>"
    )
    if page < page_count:
        parts.append(f'                <a href="?p={page + 1}&amp;n={size}">Next Page</a>')
    parts.append("            </nav>")
    return "\n".join(parts)


def render_index(
    entries: list[IndexEntry],
    title: str,
    base_href: str,
    customization: IndexCustomization,
    pagination: Optional[Pagination] = None,
) -> str:
    """Render a listing page for already sorted ``entries``."""
    head = [f"<title>{escape_text(title)}</title>"]
    head.append(f'<base href="{urllib.parse.quote(base_href, errors="surrogateescape")}"/>')
    if customization.has_stylesheet:
        head.append(f'<link rel="stylesheet" href="{STYLESHEET_FILE}"/>')

    body = []
    if customization.header is not None:
        body.append(customization.header.rstrip())
    else:
        body.append(f"        <h1>{escape_text(title)}</h1>")
    if base_href != "/":
        body.append('        <a class="parent" href="../">../</a>')

    start = 1
    visible = entries
    if pagination is not None:
        visible = pagination.select(entries)
        start = (pagination.page - 1) * pagination.size + 1
    body.append(f'        <ol class="entries" start="{start}">')
    body.extend(_format_entry(entry) for entry in visible)
    body.append("        </ol>")
    if pagination is not None:
        body.append(_format_pagination(pagination, pagination.page_count(len(entries))))
    if customization.footer is not None:
        body.append(customization.footer.rstrip())

    return render_page("\n        ".join(head), "\n".join(body))


def generate_index(
    directory: Path,
    base_href: str,
    query: Mapping[str, str],
    site_root: Optional[Path] = None,
) -> bytes:
    """Build the listing page for a site directory."""
    entries = list_entries(directory)
    customization = IndexCustomization.load(directory, site_root)
    pagination = Pagination.from_query(query)
    title = customization.title or f"Index of {base_href}"
    INDEX_LOGGER.debug(
        "Directory listing generated",
        extra={
            "event": "auto_index_generated",
            "path": directory.as_posix(),
            "entries": len(entries),
            "paginated": pagination is not None,
        },
    )
    page = render_index(entries, title, base_href, customization, pagination)
    return page.encode("utf-8", errors="replace")


def people_entries(homes: HomeLookup) -> list[IndexEntry]:
    """One directory entry per user that publishes a site."""
    entries = []
    for username in homes.usernames():
        home = homes.home_for(username)
        if home is None:
            continue
        site_root = home / SITE_DIRECTORY_NAME
        try:
            if not site_root.is_dir():
                continue
            stat = site_root.stat()
        except OSError:
            continue
        entries.append(IndexEntry(username, True, stat.st_size, stat.st_mtime))
    entries.sort(key=lambda entry: entry.name)
    return entries


def generate_people_index(homes: HomeLookup, query: Mapping[str, str]) -> bytes:
    """Build the listing of every user's site served at ``/``."""
    page = render_index(
        people_entries(homes), PEOPLE_TITLE, "/", IndexCustomization(), Pagination.from_query(query)
    )
    return page.encode("utf-8", errors="replace")
