"""
workspace - per-run temporary directories holding the script source.

Each run gets one freshly made directory containing exactly one file.
materialize() creates it; cleanup() removes it, best-effort and quietly.
"""

import logging
import os
import tempfile
from pathlib import Path


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

kDIR_PREFIX = "scriptrunner-"
kDEFAULT_SCRIPT_NAME = "script.kts"


# =============================================================================
# GLOBAL STATE
# =============================================================================

g = {
    "root": None,                          # parent dir for workspaces; None -> system temp
    "script_name": kDEFAULT_SCRIPT_NAME,   # file name inside each workspace
}


class IOFailure(Exception):
    """Raised when a workspace cannot be created or written."""
    pass


def configure(root=None, script_name=None):
    """Set the workspace parent directory and/or the script file name."""
    if root is not None:
        g["root"] = Path(root)
    if script_name is not None:
        if not script_name or "/" in script_name or "\\" in script_name:
            raise ValueError(f"script name must be a bare file name: {script_name!r}")
        g["script_name"] = script_name


def reset():
    g["root"] = None
    g["script_name"] = kDEFAULT_SCRIPT_NAME


# =============================================================================
# LIFECYCLE
# =============================================================================

def materialize(content):
    """Write content into a fresh workspace.  Returns the script's absolute Path.

    Raises IOFailure if the directory can't be made or the write fails.
    A failed write removes whatever was made, so nothing partial is left.
    """
    root = g["root"]
    try:
        d = Path(tempfile.mkdtemp(prefix=kDIR_PREFIX, dir=root)).resolve()
    except OSError as e:
        raise IOFailure(f"could not create workspace directory: {e}") from e

    p = d / g["script_name"]
    try:
        data = content.encode("utf-8")
        with open(p, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except (OSError, UnicodeEncodeError) as e:
        cleanup(p)
        raise IOFailure(f"could not write script file: {e}") from e

    logger.debug("materialized %d bytes into %s", len(data), p)
    return p


def cleanup(path):
    """Delete the script file, then its directory if empty.

    Never raises.  Calling it again on a removed workspace does nothing.
    """
    if path is None:
        return
    p = Path(path)
    try:
        p.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("could not delete script file %s: %s", p, e)
        return

    d = p.parent
    try:
        d.rmdir()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove workspace directory %s: %s", d, e)
    else:
        logger.debug("removed workspace %s", d)
