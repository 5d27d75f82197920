"""Handling strategies a resolved request can be dispatched to."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

INDEX_DOCUMENT = "index.html"
INDEX_EXECUTABLE = "index_executable"
FORM_EXECUTABLE = "form_executable"
ALLOWED_VARIABLES = "allowed_variables"

HANDLER_FILES = frozenset({INDEX_EXECUTABLE, FORM_EXECUTABLE, ALLOWED_VARIABLES})


@dataclass(frozen=True)
class StaticFile:
    """Serve the file's bytes with a type inferred from its extension."""

    path: Path


@dataclass(frozen=True)
class IndexExecutable:
    """Run the directory's GET handler."""

    path: Path
    allowed_variables: Optional[Path]


@dataclass(frozen=True)
class FormExecutable:
    """Run the directory's POST handler."""

    path: Path
    allowed_variables: Optional[Path]


@dataclass(frozen=True)
class Directory:
    """Generate a listing of the directory."""

    path: Path


ResolvedTarget = Union[StaticFile, IndexExecutable, FormExecutable, Directory]
