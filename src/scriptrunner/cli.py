"""
Script Runner - command line entry point.

    scriptrunner                         open the editor window
    scriptrunner gui                     same
    scriptrunner run --execpath.script FILE
                                         run FILE headless, streaming output
    scriptrunner check                   confirm the compiler can be launched

The compiler command defaults to $SCRIPT_RUNNER_COMPILER, else "kotlinc";
override per invocation with --runner.compiler "<command>".
"""

import logging
import os
import shlex
import shutil
import sys
from pathlib import Path

import lionscliapp as app

from . import launcher
from . import pretty
from . import session
from . import workspace


# =============================================================================
# CONSTANTS
# =============================================================================

kPROJECT_DIR = ".scriptrunner"
kCOMPILER_ENV = "SCRIPT_RUNNER_COMPILER"

kEXIT_START_FAILED = 1
kEXIT_UNCONFIRMED = 2    # the wait ended before the child's exit was confirmed
kEXIT_CANCELLED = 130


# =============================================================================
# SETUP FROM ctx
# =============================================================================

def _configure_logging():
    level_name = str(app.ctx.get("log.level", "WARNING")).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _configure_runner():
    """Push ctx settings into the session controller and workspace manager."""
    _configure_logging()
    session.configure(
        compiler=app.ctx["runner.compiler"],
        script_flag=app.ctx["runner.script_flag"],
    )
    workspace.configure(script_name=app.ctx["runner.script_name"])


def _exit_code_for(snapshot):
    if snapshot is None or snapshot["status"] == "failed":
        return kEXIT_START_FAILED
    if snapshot["status"] == "cancelled":
        return kEXIT_CANCELLED
    code = snapshot["exit_code"]
    if code is None or code == launcher.kINTERRUPTED_EXIT_CODE:
        return kEXIT_UNCONFIRMED
    if code < 0:
        # killed by signal N -> shell convention 128+N
        return 128 - code
    return code


# =============================================================================
# TERMINAL SINKS
# =============================================================================

def _print_line(text, origin):
    stream = sys.stderr if origin == "stderr" else sys.stdout
    print(text, file=stream, flush=True)


def _print_status(text):
    logging.getLogger(__name__).info("status: %s", text)


# =============================================================================
# CLI COMMANDS
# =============================================================================

def cmd_gui():
    """Open the editor window."""
    _configure_runner()
    from . import gui  # tkinter only needed here

    text = ""
    script = app.ctx.get("execpath.script")
    if script is not None and Path(script).is_file():
        text = Path(script).read_text(encoding="utf-8")
    gui.main(text)


def cmd_run():
    """Run a script file headless and exit with its exit code."""
    _configure_runner()

    script = app.ctx.get("execpath.script")
    if script is None:
        print("Usage: scriptrunner run --execpath.script <file>", file=sys.stderr)
        sys.exit(kEXIT_START_FAILED)

    try:
        text = Path(script).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(f"Could not read {script}: {e}", file=sys.stderr)
        sys.exit(kEXIT_START_FAILED)

    session.declare_sinks(append_line=_print_line, set_status=_print_status)

    session.start(text)
    try:
        session.run_until_idle()
    except KeyboardInterrupt:
        print("\nInterrupted by user.", file=sys.stderr)
        session.cancel()
        session.run_until_idle(session.kSHUTDOWN_WAIT_SECONDS)
        session.shutdown()

    snapshot = session.last_session()
    pretty.print_report(snapshot)
    sys.exit(_exit_code_for(snapshot))


def cmd_check():
    """Report whether the configured compiler can be found."""
    _configure_runner()

    argv = launcher.build_argv(session.g["compiler"][0], session.g["compiler"][1:])
    exe = argv[0]
    found = shutil.which(exe)
    if found is None and Path(exe).is_file():
        found = str(Path(exe).resolve())

    print(f"compiler: {shlex.join(argv)}")
    print(f"flag:     {session.g['script_flag']}")
    if found is None:
        print(f"NOT FOUND: {exe}")
        sys.exit(kEXIT_START_FAILED)
    print(f"resolved: {found}")


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    """Entry point via lionscliapp."""
    app.declare_app("scriptrunner", "0.1")
    app.describe_app("Edit a script, run it through an external compiler, watch the output")
    app.declare_projectdir(kPROJECT_DIR)

    # Configuration keys
    app.declare_key("runner.compiler", os.environ.get(kCOMPILER_ENV, session.kDEFAULT_COMPILER))
    app.describe_key("runner.compiler", f"Compiler command (default from ${kCOMPILER_ENV}, else kotlinc)")

    app.declare_key("runner.script_flag", session.kDEFAULT_SCRIPT_FLAG)
    app.describe_key("runner.script_flag", "Flag placed before the script path")

    app.declare_key("runner.script_name", workspace.kDEFAULT_SCRIPT_NAME)
    app.describe_key("runner.script_name", "File name of the script inside each run's temp dir")

    app.declare_key("execpath.script", None)
    app.describe_key("execpath.script", "Script file to run (run) or to open (gui)")

    app.declare_key("log.level", "WARNING")
    app.describe_key("log.level", "Log level: DEBUG, INFO, WARNING, ERROR")

    # Commands
    app.declare_cmd("", cmd_gui)
    app.declare_cmd("gui", cmd_gui)
    app.describe_cmd("gui", "Open the editor window")

    app.declare_cmd("run", cmd_run)
    app.describe_cmd("run", "Run a script file headless, streaming its output")

    app.declare_cmd("check", cmd_check)
    app.describe_cmd("check", "Check that the compiler can be launched")

    app.main()
