"""Dispatch to a tool by the name the program was started under."""

from __future__ import annotations

import os
import sys
from typing import Callable

from . import sei_unregistered, slicer, udp_capture

_APPS: dict[str, Callable[[list[str]], int]] = {
    "tstools_udp_capture": udp_capture.main,
    "tstools_slicer": slicer.main,
    "tstools_sei_unregistered": sei_unregistered.main,
}


def main(argv=None) -> int:
    """Run the tool named by ``argv[0]``, or ``argv[1]`` when the first is not a tool.

    ``--listapps`` prints the tool names; ``--symlinks`` creates a link per tool
    in the current directory pointing at ``argv[0]``.
    """
    args = list(sys.argv if argv is None else argv)
    program = args[0] if args else ""
    appname = os.path.basename(program)

    if len(args) == 2 and args[1] == "--listapps":
        for name in _APPS:
            print(name)
        return 0

    if len(args) == 2 and args[1] == "--symlinks":
        for name in _APPS:
            print(f"creating link {name}")
            try:
                os.symlink(program, name)
            except OSError:
                pass
        return 0

    app = _APPS.get(appname)
    if app is not None:
        return app(args[1:])
    if len(args) > 1 and args[1] in _APPS:
        return _APPS[args[1]](args[2:])

    print(f"No application called {appname}, aborting.")
    print(" ".join(_APPS) + " ")
    return 1