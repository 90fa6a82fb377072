# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import signal
import sys
from types import FrameType
from typing import Optional

from ukiforge import run_verb
from ukiforge.config import parse_config
from ukiforge.log import ARG_DEBUG, log_setup
from ukiforge.run import ARG_TOOL_TIMEOUT, uncaught_exception_handler


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    args, config = parse_config(sys.argv[1:])

    if args.debug:
        ARG_DEBUG.set(True)
        faulthandler.enable()

    ARG_TOOL_TIMEOUT.set(args.tool_timeout)

    run_verb(args, config)


if __name__ == "__main__":
    main()
