"""
session - the run session controller.

Owns at most one run at a time and is the single source of truth for
everything a view shows about it: status, exit code, diagnostics, output.

Threads
-------
The caller of start() / cancel() / pump() is the coordination thread (the
tkinter main loop, or run_until_idle() for headless use).  Each run gets
three tasks, each a Future backed by its own daemon thread:

    stdout-drain  -- reads stdout lines
    stderr-drain  -- reads stderr lines, parses diagnostics
    exit-await    -- waits for exit, joins both drains, posts "exit"

Daemon threads so that a drain still blocked on a pipe (held open by some
process that escaped the kill) never keeps the host from exiting.

Workers never touch g or the sinks.  They post event dicts onto `events`;
pump() applies them on the coordination thread.  Since exit-await joins the
drains before posting and the queue is FIFO, the terminal transition always
lands after every line of output.

Status values
-------------
"idle" | "starting" | "running" | "finished" | "failed" | "cancelled"

Terminal states are reached exactly once per run; the session is then
retired into g["last"] and the controller is "idle" again.
"""

import logging
import queue
import shlex
import threading
import time
import uuid
from concurrent.futures import Future

from scriptrunner import diagnostics
from scriptrunner import launcher
from scriptrunner import workspace


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

kDEFAULT_COMPILER = "kotlinc"
kDEFAULT_SCRIPT_FLAG = "-script"
kSHUTDOWN_WAIT_SECONDS = 2.0
kPOLL_SECONDS = 0.05

kTERMINAL = ("finished", "failed", "cancelled")

kSINK_NAMES = (
    "append_line",          # (text, origin)  origin: "stdout" | "stderr"
    "clear_output",         # ()
    "set_status",           # (text)
    "set_exit_code",        # (code or None)
    "set_running_state",    # (is_running)
    "set_diagnostics",      # (list, visible)
)


# =============================================================================
# GLOBAL STATE
# =============================================================================

g = {
    "compiler": [kDEFAULT_COMPILER],    # argv prefix for the compiler
    "script_flag": kDEFAULT_SCRIPT_FLAG,
    "cwd": None,                        # None -> inherit host working directory
    "accepting": True,                  # False after shutdown()
    "session": None,                    # the live run, or None when idle
    "last": None,                       # snapshot of the most recently retired run
    "sinks": {},
}

# Worker -> coordination channel.  Module-global; never reassigned.
events = queue.Queue()

# Guards session["handle"] between start/cancel/finalize/shutdown.
_handle_lock = threading.Lock()


def _noop(*args):
    pass


def reset():
    """Return to the pristine, accepting, idle state.  For tests and restarts."""
    s = g["session"]
    if s is not None:
        _shutdown_session(s)
    g["compiler"] = [kDEFAULT_COMPILER]
    g["script_flag"] = kDEFAULT_SCRIPT_FLAG
    g["cwd"] = None
    g["accepting"] = True
    g["session"] = None
    g["last"] = None
    g["sinks"] = {}
    _drain_events()


def _drain_events():
    while True:
        try:
            events.get_nowait()
        except queue.Empty:
            return


# =============================================================================
# CONFIGURATION & SINKS
# =============================================================================

def configure(compiler=None, script_flag=None, cwd=None):
    """Set the compiler command, the flag before the script path, and the cwd.

    compiler may be a string (split shell-style) or a list of argv tokens.
    """
    if compiler is not None:
        if isinstance(compiler, str):
            compiler = shlex.split(compiler)
        compiler = [str(x) for x in compiler]
        if not compiler:
            raise ValueError("compiler command must not be empty")
        g["compiler"] = compiler
    if script_flag is not None:
        g["script_flag"] = script_flag
    if cwd is not None:
        g["cwd"] = cwd


def declare_sinks(**fns):
    """Register view callbacks by name (see kSINK_NAMES).  Unknown names raise."""
    for name, fn in fns.items():
        if name not in kSINK_NAMES:
            raise KeyError(f"unknown sink: {name}")
        g["sinks"][name] = fn


def _notify(name, *args):
    fn = g["sinks"].get(name, _noop)
    try:
        fn(*args)
    except Exception:
        logger.exception("sink %s raised", name)


# =============================================================================
# SESSION RECORDS
# =============================================================================

def _new_session(script_text):
    return {
        "id": uuid.uuid4().hex[:8],
        "source": script_text,
        "script_path": None,
        "handle": None,
        "futures": [],
        "status": "starting",
        "reason": None,         # "io" | "spawn" | "shutdown" when failed/cancelled early
        "detail": None,         # human-readable reason text
        "exit_code": None,
        "diagnostics": [],
        "cancel_requested": False,
        "started_at": time.time(),
        "ended_at": None,
    }


def _snapshot(s):
    return {
        "id": s["id"],
        "status": s["status"],
        "reason": s["reason"],
        "detail": s["detail"],
        "exit_code": s["exit_code"],
        "diagnostics": list(s["diagnostics"]),
        "script_path": s["script_path"],
        "started_at": s["started_at"],
        "ended_at": s["ended_at"],
    }


def status():
    """Current controller status string."""
    s = g["session"]
    if s is None:
        return "idle"
    return s["status"]


def is_running():
    return status() == "running"


def current_diagnostics():
    s = g["session"]
    if s is None:
        return []
    return list(s["diagnostics"])


def last_session():
    """Snapshot of the most recently retired run, or None."""
    if g["last"] is None:
        return None
    return dict(g["last"], diagnostics=list(g["last"]["diagnostics"]))


def _cleanup_workspace(s):
    """Remove the run's workspace.  Failures are logged, never propagated."""
    try:
        workspace.cleanup(s["script_path"])
    except Exception:
        logger.exception("cleanup of %s failed", s["script_path"])


def _retire(s):
    s["ended_at"] = time.time()
    with _handle_lock:
        s["handle"] = None
    for f in s["futures"]:
        f.cancel()  # only affects tasks that never started
    s["futures"] = []
    g["last"] = _snapshot(s)
    g["session"] = None
    logger.info("session %s retired: %s (exit %s)", s["id"], s["status"], s["exit_code"])


# =============================================================================
# START
# =============================================================================

def start(script_text):
    """Begin a run of script_text.  Returns the session id, or None if rejected.

    Rejected (no-op plus a status notice) while another run is live or
    after shutdown().  Failures before the process is up end in "failed"
    and leave the controller idle again.
    """
    if not g["accepting"]:
        _notify("set_status", "shutting down")
        return None
    if g["session"] is not None:
        _notify("set_status", "already running")
        return None

    s = _new_session(str(script_text))
    g["session"] = s

    _notify("clear_output")
    _notify("set_diagnostics", [], False)
    _notify("set_exit_code", None)
    _notify("set_status", "starting…")

    try:
        s["script_path"] = workspace.materialize(s["source"])
    except workspace.IOFailure as e:
        _fail(s, "io", str(e))
        return s["id"]

    argv = g["compiler"] + [g["script_flag"], str(s["script_path"])]
    try:
        handle = launcher.start(argv[0], argv[1:], cwd=g["cwd"])
    except launcher.SpawnFailure as e:
        _cleanup_workspace(s)
        _fail(s, "spawn", str(e))
        return s["id"]

    with _handle_lock:
        s["handle"] = handle
    s["status"] = "running"
    _notify("set_running_state", True)
    _notify("set_status", "running…")

    sid = s["id"]
    f_out = _submit(f"run-{sid}-stdout", _drain_stdout, sid, handle)
    f_err = _submit(f"run-{sid}-stderr", _drain_stderr, sid, handle)
    f_exit = _submit(f"run-{sid}-exit", _await_exit, sid, handle, (f_out, f_err))
    s["futures"] = [f_out, f_err, f_exit]

    return s["id"]


def _fail(s, reason, detail):
    logger.warning("session %s failed (%s): %s", s["id"], reason, detail)
    s["status"] = "failed"
    s["reason"] = reason
    s["detail"] = detail
    if reason == "spawn":
        _notify("set_status", f"could not start compiler: {detail}")
    else:
        _notify("set_status", f"could not prepare script: {detail}")
    _notify("set_running_state", False)
    _retire(s)


# =============================================================================
# WORKER TASKS (never on the coordination thread)
# =============================================================================

def _submit(name, fn, *args):
    """Run fn(*args) on a daemon thread; return a Future for its result."""
    fut = Future()

    def run():
        if not fut.set_running_or_notify_cancel():
            return
        try:
            fut.set_result(fn(*args))
        except Exception as e:
            fut.set_exception(e)

    threading.Thread(target=run, name=name, daemon=True).start()
    return fut


def _post(session_id, kind, **data):
    msg = {"session": session_id, "kind": kind}
    msg.update(data)
    events.put(msg)


def _drain_stdout(session_id, handle):
    for line in launcher.stdout_lines(handle):
        _post(session_id, "stdout", line=line)


def _drain_stderr(session_id, handle):
    for line in launcher.stderr_lines(handle):
        _post(session_id, "stderr", line=line, diagnostic=diagnostics.parse(line))


def _await_exit(session_id, handle, drains):
    code = launcher.await_exit(handle)
    for f in drains:
        try:
            f.result()
        except Exception:
            logger.exception("drain task for session %s failed", session_id)
    _post(session_id, "exit", code=code)


# =============================================================================
# COORDINATION LOOP
# =============================================================================

def pump(timeout=None):
    """Apply queued worker events on the calling thread.

    With timeout=None, handles whatever is queued and returns at once.
    Otherwise blocks up to timeout seconds for the first event.
    Returns the number of events handled.
    """
    n = 0
    block = timeout is not None
    while True:
        try:
            if block:
                msg = events.get(timeout=timeout)
                block = False
            else:
                msg = events.get_nowait()
        except queue.Empty:
            return n
        _handle_event(msg)
        n += 1


def _handle_event(msg):
    s = g["session"]
    if s is None or msg["session"] != s["id"]:
        return  # stale: from a run that was already retired

    kind = msg["kind"]
    if kind == "stdout":
        _notify("append_line", msg["line"], "stdout")
    elif kind == "stderr":
        d = msg["diagnostic"]
        if d is not None:
            s["diagnostics"].append(d)
            _notify("set_diagnostics", list(s["diagnostics"]), True)
        _notify("append_line", msg["line"], "stderr")
    elif kind == "exit":
        _finalize(s, msg["code"])


def _finalize(s, code):
    """Sole finalizer for a run that reached "running"."""
    _cleanup_workspace(s)

    with _handle_lock:
        handle = s["handle"]

    s["exit_code"] = code
    if s["cancel_requested"] and handle is not None and launcher.was_killed(handle):
        s["status"] = "cancelled"
        text = "cancelled"
    else:
        s["status"] = "finished"
        text = f"finished (exit code {code})"

    _notify("set_exit_code", code)
    _notify("set_running_state", False)
    _notify("set_status", text)
    _retire(s)


def run_until_idle(timeout=None):
    """Pump events until the controller is idle.  Returns False on timeout."""
    deadline = None
    if timeout is not None:
        deadline = time.monotonic() + timeout
    while g["session"] is not None:
        if deadline is not None and time.monotonic() >= deadline:
            return False
        pump(kPOLL_SECONDS)
    return True


# =============================================================================
# CANCEL & SHUTDOWN
# =============================================================================

def cancel():
    """Ask the running process to die.  No-op unless running, or if repeated.

    Finalization still happens through the exit event; whether the run ends
    "cancelled" or "finished" depends on whether the kill reached a live
    process.  Returns True if a termination request was issued.
    """
    s = g["session"]
    if s is None or s["status"] != "running":
        return False
    if s["cancel_requested"]:
        return False

    with _handle_lock:
        handle = s["handle"]
    if handle is None:
        return False

    s["cancel_requested"] = True
    launcher.terminate(handle)
    _notify("set_status", "cancelling…")
    return True


def shutdown():
    """Application teardown: kill any live run and stop accepting work.

    Drain tasks are abandoned, not awaited.  Sinks are not notified; the
    view is going away.
    """
    g["accepting"] = False
    s = g["session"]
    if s is None:
        return
    _shutdown_session(s)


def _shutdown_session(s):
    with _handle_lock:
        handle = s["handle"]
    if handle is not None:
        launcher.terminate(handle)
        code = launcher.await_exit(handle, timeout=kSHUTDOWN_WAIT_SECONDS)
        s["exit_code"] = code
    if s["status"] not in kTERMINAL:
        s["status"] = "cancelled"
        s["reason"] = "shutdown"
    _cleanup_workspace(s)
    _retire(s)
