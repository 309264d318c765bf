"""
Path validation for the local sandbox provider.

Local sandboxes are plain directories on the host. The base directory must
not be a system location, and paths written "inside" a sandbox must not
escape its root.
"""

from pathlib import Path, PurePosixPath

from .logging import get_logger

logger = get_logger("security")

# Paths that must never be used as a sandbox base (exact match only)
BLOCKED_EXACT = {Path("/")}

# System directories: the base directory must not be inside these
BLOCKED_TREES = {
    Path("/etc"),
    Path("/var"),
    Path("/usr"),
    Path("/bin"),
    Path("/sbin"),
    Path("/boot"),
    Path("/dev"),
    Path("/proc"),
    Path("/sys"),
}

# Safe subdirectories under blocked trees (e.g. macOS temp dirs under /var)
ALLOWED_SUBTREES = {
    Path("/var/folders"),  # macOS per-user temp
    Path("/var/tmp"),
}


def _is_under(path: Path, parent: Path) -> bool:
    for check in (parent, parent.resolve()):
        try:
            path.relative_to(check)
            return True
        except ValueError:
            continue
    return False


def validate_sandbox_root(base_dir: Path) -> bool:
    """
    Validate a directory is safe to hold local sandboxes.

    Rules:
    - Cannot be the root filesystem itself
    - Cannot be inside system directories (/etc, /var, /usr, etc.)
      unless it is under an allowed temp subtree

    Returns:
        True if the directory is safe to use
    """
    base_dir = base_dir.resolve()

    if base_dir in BLOCKED_EXACT:
        logger.warning(f"Blocked sandbox root: {base_dir} (exact match)")
        return False

    if any(_is_under(base_dir, allowed) for allowed in ALLOWED_SUBTREES):
        return True

    for blocked in BLOCKED_TREES:
        if _is_under(base_dir, blocked):
            logger.warning(f"Blocked sandbox root: {base_dir} (under {blocked})")
            return False

    return True


def resolve_sandbox_path(root: Path, path: str) -> Path:
    """
    Map a sandbox-absolute path such as /home/user/.bashrc onto the host.

    Raises:
        ValueError: the path resolves outside root
    """
    root = root.resolve()
    relative = PurePosixPath(path)
    if relative.is_absolute():
        relative = relative.relative_to("/")
    resolved = (root / relative).resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError(f"Path escapes sandbox: {path}")
    return resolved
