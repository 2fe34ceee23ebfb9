"""
Tests for the process launcher.
"""

import os
import sys
import threading
from pathlib import Path

import pytest

from scriptrunner import launcher


kFAKE_COMPILER = Path(__file__).parent.parent / "fake_kotlinc.py"


# =============================================================================
# HELPERS
# =============================================================================

def _py(code):
    """Start the current interpreter running code."""
    return launcher.start(sys.executable, ["-c", code])


def _drain_both(handle):
    """Drain stdout and stderr on separate threads; return both line lists."""
    out, err = [], []
    t_out = threading.Thread(target=lambda: out.extend(launcher.stdout_lines(handle)))
    t_err = threading.Thread(target=lambda: err.extend(launcher.stderr_lines(handle)))
    t_out.start()
    t_err.start()
    t_out.join(30)
    t_err.join(30)
    return out, err


# =============================================================================
# ARGV
# =============================================================================

class TestBuildArgv:

    def test_plain_executable(self):
        """Executables are used as-is, followed by the args."""
        assert launcher.build_argv("kotlinc", ["-script", "/a.kts"]) == ["kotlinc", "-script", "/a.kts"]

    def test_python_script_runs_under_interpreter(self):
        """A .py executable is run through the current interpreter."""
        argv = launcher.build_argv("tool.py", ["x"])
        assert argv == [sys.executable, "tool.py", "x"]

    def test_args_are_stringified(self):
        """Path arguments become strings."""
        argv = launcher.build_argv("kotlinc", [Path("/a.kts")])
        assert argv[-1] == str(Path("/a.kts"))


# =============================================================================
# SPAWN
# =============================================================================

class TestStart:

    def test_missing_executable_is_spawn_failure(self, tmp_path):
        """A nonexistent executable raises SpawnFailure, not an exit code."""
        with pytest.raises(launcher.SpawnFailure):
            launcher.start(str(tmp_path / "no-such-compiler"), ["-script", "x"])

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX exec permissions")
    def test_non_executable_file_is_spawn_failure(self, tmp_path):
        """A file without exec permission raises SpawnFailure."""
        f = tmp_path / "kotlinc"
        f.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        os.chmod(f, 0o644)
        with pytest.raises(launcher.SpawnFailure):
            launcher.start(str(f), [])

    def test_handle_shape(self):
        """Handles carry the popen, argv and pid."""
        h = _py("pass")
        try:
            assert h["argv"][0] == sys.executable
            assert h["pid"] == h["popen"].pid
            assert h["killed"] is False
        finally:
            _drain_both(h)
            launcher.await_exit(h)

    def test_no_stdin(self):
        """The child sees an empty stdin."""
        h = _py("import sys; print(repr(sys.stdin.read()))")
        out, err = _drain_both(h)
        assert launcher.await_exit(h) == 0
        assert out == ["''"]

    def test_fake_compiler_invocation(self, tmp_path):
        """The fake compiler runs a -script file through the .py path."""
        script = tmp_path / "script.kts"
        script.write_text('println("hi")\n', encoding="utf-8")
        h = launcher.start(str(kFAKE_COMPILER), ["-script", str(script)])
        out, err = _drain_both(h)
        assert launcher.await_exit(h) == 0
        assert out == ["hi"]
        assert err == []


# =============================================================================
# STREAMS
# =============================================================================

class TestStreams:

    def test_lines_in_order_without_terminators(self):
        """stdout lines arrive in order, stripped of newlines."""
        h = _py("import sys\nfor i in range(5): print(i)\nsys.stdout.write('tail')")
        out, err = _drain_both(h)
        launcher.await_exit(h)
        assert out == ["0", "1", "2", "3", "4", "tail"]

    def test_stdout_and_stderr_are_separate(self):
        """Each stream yields only its own lines."""
        h = _py("import sys\nprint('out')\nprint('err', file=sys.stderr)")
        out, err = _drain_both(h)
        launcher.await_exit(h)
        assert out == ["out"]
        assert err == ["err"]

    def test_large_output_on_both_streams(self):
        """Concurrent draining copes with output far beyond a pipe buffer."""
        code = (
            "import sys\n"
            "for i in range(20000):\n"
            "    sys.stderr.write('e%d\\n' % i)\n"
            "    sys.stdout.write('o%d\\n' % i)\n"
        )
        h = _py(code)
        out, err = _drain_both(h)
        assert launcher.await_exit(h, timeout=30) == 0
        assert len(out) == 20000
        assert len(err) == 20000
        assert out[-1] == "o19999"
        assert err[0] == "e0"

    def test_utf8_decoding(self):
        """Output is decoded as UTF-8."""
        h = _py("import sys\nsys.stdout.buffer.write('héllo ✓\\n'.encode('utf-8'))")
        out, err = _drain_both(h)
        launcher.await_exit(h)
        assert out == ["héllo ✓"]

    def test_undecodable_bytes_are_replaced(self):
        """Invalid UTF-8 doesn't break the drain."""
        h = _py("import sys\nsys.stdout.buffer.write(b'a\\xffb\\n')")
        out, err = _drain_both(h)
        launcher.await_exit(h)
        assert out == ["a\ufffdb"]


# =============================================================================
# EXIT & TERMINATION
# =============================================================================

class TestExit:

    def test_exit_code(self):
        """await_exit returns the child's exit code."""
        h = _py("import sys; sys.exit(3)")
        _drain_both(h)
        assert launcher.await_exit(h) == 3

    def test_timeout_returns_sentinel(self):
        """A wait that can't confirm exit returns -1."""
        h = _py("import time; time.sleep(30)")
        try:
            assert launcher.await_exit(h, timeout=0.1) == launcher.kINTERRUPTED_EXIT_CODE
        finally:
            launcher.terminate(h)
            _drain_both(h)
            launcher.await_exit(h)


class TestTerminate:

    def test_kills_running_process(self):
        """terminate kills a live child and await_exit then returns."""
        h = _py("import time; time.sleep(30)")
        assert h["popen"].poll() is None
        assert launcher.terminate(h) is True
        _drain_both(h)
        code = launcher.await_exit(h, timeout=10)
        assert code != 0
        assert code < 0 or sys.platform == "win32"  # killed by signal on POSIX
        assert launcher.was_killed(h)
        assert h["popen"].poll() is not None

    def test_idempotent(self):
        """A second terminate is a no-op."""
        h = _py("import time; time.sleep(30)")
        assert launcher.terminate(h) is True
        assert launcher.terminate(h) is False
        _drain_both(h)
        launcher.await_exit(h, timeout=10)

    def test_after_exit_is_noop(self):
        """terminate after natural exit reports nothing killed."""
        h = _py("pass")
        _drain_both(h)
        assert launcher.await_exit(h) == 0
        assert launcher.terminate(h) is False
        assert launcher.was_killed(h) is False

    def test_unblocks_drains(self):
        """Killing the child closes its streams so drains finish."""
        h = _py("import time\nprint('ready', flush=True)\ntime.sleep(30)")
        out = []

        def drain():
            for line in launcher.stdout_lines(h):
                out.append(line)

        t = threading.Thread(target=drain)
        t.start()
        launcher.terminate(h)
        t.join(10)
        assert not t.is_alive()
        list(launcher.stderr_lines(h))
        launcher.await_exit(h, timeout=10)

    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX")
    def test_kills_process_group(self):
        """A grandchild sharing the pipes dies too, so the drains reach EOF."""
        h = _py(
            "import subprocess, sys, time\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        assert os.getpgid(h["pid"]) == h["pid"]

        out = launcher.stdout_lines(h)
        assert next(out) == "ready"
        assert launcher.terminate(h) is True

        rest, err = [], []
        t_out = threading.Thread(target=lambda: rest.extend(out))
        t_err = threading.Thread(target=lambda: err.extend(launcher.stderr_lines(h)))
        t_out.start()
        t_err.start()
        t_out.join(10)
        t_err.join(10)
        assert not t_out.is_alive()
        assert not t_err.is_alive()
        assert rest == []
        assert launcher.await_exit(h, timeout=10) < 0
