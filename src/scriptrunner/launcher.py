"""
launcher - start an external compiler process and expose its streams.

A process handle is a plain dict:

    {
        "popen":  subprocess.Popen,
        "argv":   [str, ...],      # what was actually spawned
        "pid":    int,
        "lock":   threading.Lock,  # guards "killed"
        "killed": bool,            # True once terminate() killed a live process
    }

stdout and stderr are separate pipes.  They MUST be drained on separate
threads: reading one to the end before touching the other can deadlock once
the child fills the unread pipe's buffer.

On POSIX the child leads its own process group, so terminate() also takes
down whatever it spawned (kotlinc is a shell wrapper around java).  On
Windows only the direct child is killed.
"""

import logging
import os
import signal
import subprocess
import sys
import threading


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

kINTERRUPTED_EXIT_CODE = -1
kENCODING = "utf-8"
kPOSIX = os.name != "nt"


class SpawnFailure(Exception):
    """Raised when the executable could not be launched at all."""
    pass


# =============================================================================
# SPAWNING
# =============================================================================

def build_argv(executable, args):
    """Build the argv list; .py executables run under the current interpreter."""
    L = []
    executable = str(executable)
    if executable.lower().endswith(".py"):
        L.append(sys.executable)
    L.append(executable)
    L.extend(str(a) for a in args)
    return L


def start(executable, args, cwd=None):
    """Spawn executable with args.  Returns a process handle dict.

    The child inherits the host environment, gets no stdin, and has
    stdout/stderr piped back as UTF-8 text.

    Raises SpawnFailure if the OS refuses to start it.
    """
    argv = build_argv(executable, args)

    # .bat / .cmd wrappers need the shell on Windows
    shell = os.name == "nt" and argv[0].lower().endswith((".bat", ".cmd"))

    try:
        popen = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding=kENCODING,
            errors="replace",
            bufsize=1,
            shell=shell,
            start_new_session=kPOSIX,
        )
    except FileNotFoundError as e:
        raise SpawnFailure(f"executable not found: {argv[0]}") from e
    except PermissionError as e:
        raise SpawnFailure(f"executable not runnable: {argv[0]}") from e
    except (OSError, ValueError) as e:
        raise SpawnFailure(f"could not start {argv[0]}: {e}") from e

    logger.info("spawned pid %s: %s", popen.pid, argv)

    return {
        "popen": popen,
        "argv": argv,
        "pid": popen.pid,
        "lock": threading.Lock(),
        "killed": False,
    }


# =============================================================================
# STREAMS
# =============================================================================

def _lines(stream):
    """Yield lines from a text stream, without terminators, until it closes."""
    if stream is None:
        return
    try:
        for line in stream:
            yield line.rstrip("\r\n")
    except ValueError:
        # stream closed underneath us (process torn down during shutdown)
        return
    finally:
        try:
            stream.close()
        except OSError:
            pass


def stdout_lines(handle):
    return _lines(handle["popen"].stdout)


def stderr_lines(handle):
    return _lines(handle["popen"].stderr)


# =============================================================================
# TERMINATION
# =============================================================================

def _kill(popen):
    if kPOSIX:
        # child is its own session leader: pgid == pid
        os.killpg(popen.pid, signal.SIGKILL)
    else:
        popen.kill()


def terminate(handle):
    """Forcefully kill the process.  Idempotent; safe after it has exited.

    Returns True only if this call killed a process that was still running.
    On POSIX the whole process group goes with it.
    """
    with handle["lock"]:
        if handle["killed"]:
            return False
        popen = handle["popen"]
        if popen.poll() is not None:
            return False
        try:
            _kill(popen)
        except ProcessLookupError:
            # exited between poll() and kill()
            return False
        except OSError as e:
            logger.warning("could not kill pid %s: %s", handle["pid"], e)
            return False
        handle["killed"] = True

    logger.info("killed pid %s", handle["pid"])
    return True


def was_killed(handle):
    with handle["lock"]:
        return handle["killed"]


def await_exit(handle, timeout=None):
    """Block until the process exits; return its exit code.

    Returns kINTERRUPTED_EXIT_CODE when exit can't be confirmed (the wait
    timed out or was interrupted).  Does not retry.
    """
    popen = handle["popen"]
    try:
        return popen.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("pid %s did not exit within %ss", handle["pid"], timeout)
    except OSError as e:
        logger.warning("wait on pid %s interrupted: %s", handle["pid"], e)
    return kINTERRUPTED_EXIT_CODE
