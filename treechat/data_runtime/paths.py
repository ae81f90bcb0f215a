"""Path and store-key codec.

Canonicalizes ``(workspace, path)`` pairs into flat store keys and validates
path shape.  A store key is the workspace id immediately followed by the path::

    ws1 + /sessions/42/name  ->  ws1/sessions/42/name

Workspace ids cannot contain ``/``, so the first ``/`` in a key always marks
the start of the path and prefixes of different workspaces never overlap.
"""

from __future__ import annotations

import re
import unicodedata

from treechat.data_runtime.errors import DataValidationError

ROOT = "/"
MAX_PATH_BYTES = 1000
MAX_PATH_DEPTH = 20
MAX_WORKSPACE_LENGTH = 255
RESERVED_PREFIXES = ("/system/", "/admin/")

_WORKSPACE_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


# -- Validation ----------------------------------------------------------------


def validate_workspace(workspace: str | None) -> str:
    """Return *workspace* unchanged or raise ``DataValidationError``."""
    if not workspace or not isinstance(workspace, str):
        raise DataValidationError("Workspace ID is required")
    if len(workspace) > MAX_WORKSPACE_LENGTH or not _WORKSPACE_RE.match(workspace):
        raise DataValidationError("Invalid workspace ID format", workspace=workspace)
    return workspace


def validate_path(path: str | None, *, allow_root: bool = False) -> str:
    """Return the NFC-normalized *path* or raise ``DataValidationError``.

    ``allow_root`` admits ``/`` itself, which is meaningful for scans (tree
    reads, listings) but never as a write target.
    """
    if not isinstance(path, str) or not path:
        raise DataValidationError("Path is required")
    if not path.startswith("/"):
        raise DataValidationError("Path must start with '/'", path=path)

    path = unicodedata.normalize("NFC", path)

    if path == ROOT:
        if not allow_root:
            raise DataValidationError("Root path is not a valid target", path=path)
        return path

    size = len(path.encode("utf-8"))
    if size > MAX_PATH_BYTES:
        msg = f"Path exceeds maximum length of {MAX_PATH_BYTES} bytes (current: {size} bytes)"
        raise DataValidationError(msg, path=path)
    if _CONTROL_RE.search(path):
        raise DataValidationError("Path contains control characters", path=path)
    if "?" in path:
        # Reserved as the query separator of cache keys.
        raise DataValidationError("Path may not contain '?'", path=path)
    if any(path.startswith(prefix) or path == prefix.rstrip("/") for prefix in RESERVED_PREFIXES):
        raise DataValidationError("Path uses reserved prefix", path=path)

    segments = path[1:].split("/")
    if len(segments) > MAX_PATH_DEPTH:
        raise DataValidationError(f"Path exceeds maximum depth of {MAX_PATH_DEPTH}", path=path)
    for segment in segments:
        if not segment:
            raise DataValidationError("Path contains an empty segment", path=path)
        if segment.startswith("."):
            raise DataValidationError("Path segments may not start with '.'", path=path)
    return path


# -- Keys ----------------------------------------------------------------------


def to_key(workspace: str, path: str) -> str:
    return f"{workspace}{path}"


def descendant_prefix(workspace: str, path: str) -> str:
    """Key prefix matching every document strictly below *path*."""
    if path == ROOT:
        return f"{workspace}/"
    return f"{workspace}{path}/"


def path_from_key(workspace: str, key: str) -> str:
    if not key.startswith(workspace + "/"):
        msg = f"Key {key!r} does not belong to workspace {workspace!r}"
        raise DataValidationError(msg)
    return key[len(workspace) :]


# -- Path arithmetic -----------------------------------------------------------


def split_path(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def join_path(*segments: str) -> str:
    return "/" + "/".join(s.strip("/") for s in segments if s.strip("/"))


def parent_path(path: str) -> str:
    """Parent of *path*; the parent of a top-level path (and of root) is root."""
    segments = split_path(path)
    return join_path(*segments[:-1]) if len(segments) > 1 else ROOT


def ancestors(path: str) -> list[str]:
    """All proper ancestors of *path*, nearest first, ending at root."""
    result = []
    current = path
    while current != ROOT:
        current = parent_path(current)
        result.append(current)
    return result


def depth(path: str) -> int:
    return len(split_path(path))


def is_within(path: str, prefix: str) -> bool:
    """True if *path* equals *prefix* or lies below it at a segment boundary.

    ``/ab`` is not within ``/a``.
    """
    if prefix == ROOT:
        return path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


def child_name(prefix: str, path: str) -> str | None:
    """Name of the immediate child of *prefix* on the way to *path*."""
    if path == prefix or not is_within(path, prefix):
        return None
    rest = path[len(prefix) :] if prefix != ROOT else path
    return rest.lstrip("/").split("/", 1)[0]


def rebase(path: str, source: str, target: str) -> str:
    """Move *path* from under *source* to the same place under *target*."""
    if path == source:
        return target
    return target.rstrip("/") + path[len(source) :]
