"""
Stand-in compiler for tests:  fake_kotlinc.py -script <path>

Runs the script file as Python with println()/eprintln() predefined, so
tests can drive real processes without a Kotlin toolchain.
"""

import sys


def println(*args):
    print(*args, flush=True)


def eprintln(*args):
    print(*args, file=sys.stderr, flush=True)


def main():
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")

    args = sys.argv[1:]
    if len(args) != 2 or args[0] != "-script":
        eprintln("usage: fake_kotlinc.py -script <path>")
        sys.exit(64)

    path = args[1]
    with open(path, "r", encoding="utf-8") as f:
        src = f.read()

    env = {
        "__name__": "__main__",
        "println": println,
        "eprintln": eprintln,
        "SCRIPT_PATH": path,
    }
    exec(compile(src, path, "exec"), env)


if __name__ == "__main__":
    main()
