"""Workspace path normalization and matching.

Matching is exact equality after normalization, never prefix or
containment. A window with no workspace open only accepts requests that
name no project; a window with a workspace rejects those ownerless requests.
"""

import re
from typing import Iterable, Optional

_TRAILING_SLASHES = re.compile(r"/+$")


def normalize_path(path: Optional[str]) -> str:
    """Normalize a path for comparison: forward slashes, no trailing slash, lowercase."""
    if not path:
        return ""
    return _TRAILING_SLASHES.sub("", path.replace("\\", "/")).lower()


def is_empty_path(path: Optional[str]) -> bool:
    """True for a missing project directory or the `.` default."""
    if not path or path == ".":
        return True
    return normalize_path(path) in ("", ".")


def normalize_workspaces(paths: Iterable[str]) -> list[str]:
    """Normalize the window's workspace folders, dropping empty entries."""
    return [normalize_path(p) for p in paths if not is_empty_path(p)]


def matches_workspace(project_directory: Optional[str], workspace_paths: Iterable[str]) -> bool:
    """Decide whether a request's project directory belongs to this window.

    Args:
        project_directory: The request's projectDirectory
        workspace_paths: The window's workspace folder paths (may be empty)
    """
    folders = normalize_workspaces(workspace_paths)
    empty = is_empty_path(project_directory)

    if not folders:
        return empty
    if empty:
        return False

    target = normalize_path(project_directory)
    return any(target == folder for folder in folders)


def broker_belongs(owner_workspace: Optional[str], workspace_paths: Iterable[str]) -> bool:
    """Decide whether a broker is claimed by (or still free for) this window.

    An unclaimed broker (owner unset) belongs to every window.
    """
    if owner_workspace is None:
        return True

    folders = normalize_workspaces(workspace_paths)
    owner = normalize_path(owner_workspace)
    if not folders:
        return is_empty_path(owner)
    return owner in folders
