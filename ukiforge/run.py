# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import contextvars
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Callable, NoReturn, Optional

from ukiforge.log import ARG_DEBUG, die
from ukiforge.util import _FILE, PathString

# These types are only generic during type checking and not at runtime, leading
# to a TypeError during compilation.
# Let's be as strict as we can with the description for the usage we have.
if TYPE_CHECKING:
    CompletedProcess = subprocess.CompletedProcess[str]
    Popen = subprocess.Popen[str]
else:
    CompletedProcess = subprocess.CompletedProcess
    Popen = subprocess.Popen

# Upper bound in seconds for a single external tool invocation, initialized from the configuration.
ARG_TOOL_TIMEOUT = contextvars.ContextVar("tool-timeout", default=600.0)


def ensure_exc_info() -> tuple[type[BaseException], BaseException, TracebackType]:
    exctype, exc, tb = sys.exc_info()
    assert exctype
    assert exc
    assert tb
    return (exctype, exc, tb)


@contextlib.contextmanager
def uncaught_exception_handler(exit: Callable[[int], NoReturn] = sys.exit) -> Iterator[None]:
    rc = 0
    try:
        yield
    except SystemExit as e:
        rc = e.code if isinstance(e.code, int) else 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except KeyboardInterrupt:
        rc = 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
        else:
            logging.error("Interrupted")
    except subprocess.CalledProcessError as e:
        # We always log when subprocess.CalledProcessError is raised, so we don't log again here.
        rc = e.returncode

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except subprocess.TimeoutExpired:
        # Same as above, the timeout was already logged when it happened.
        rc = 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except BaseException:
        sys.excepthook(*ensure_exc_info())
        rc = 1
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        exit(rc)


def log_process_failure(cmdline: Sequence[str], returncode: int, output: Optional[str] = None) -> None:
    if -returncode in (signal.SIGINT, signal.SIGTERM):
        logging.error(f"Interrupted by {signal.Signals(-returncode).name} signal")
    elif returncode < 0:
        logging.error(f'"{shlex.join(cmdline)}" was killed by {signal.Signals(-returncode).name} signal.')
    elif returncode == 127:
        logging.error(f"{cmdline[0]} not found.")
    else:
        logging.error(f'"{shlex.join(cmdline)}" returned non-zero exit code {returncode}.')

    if output and output.strip():
        for line in output.rstrip().splitlines():
            logging.error(f"  {line}")


def run(
    cmdline: Sequence[PathString],
    check: bool = True,
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    input: Optional[str] = None,
    env: Mapping[str, str] = {},
    log: bool = True,
    timeout: Optional[float] = None,
    success_exit_status: Sequence[int] = (0,),
) -> CompletedProcess:
    """
    Run an external tool to completion.

    Unless explicit redirection is requested, the output of the tool is captured and only shown when it
    fails (or at debug level otherwise), so a failure report always carries the tool's own diagnostics.
    """
    if input is not None:
        assert stdin is None  # stdin and input cannot be specified together
        stdin = subprocess.PIPE

    captured = not stdout and not stderr
    if captured:
        stdout = subprocess.PIPE
        stderr = subprocess.STDOUT
    elif not stderr:
        stderr = subprocess.PIPE

    timeout = timeout if timeout is not None else ARG_TOOL_TIMEOUT.get()
    cmd = [os.fspath(x) for x in cmdline]

    with spawn(cmd, stdin=stdin, stdout=stdout, stderr=stderr, env=env) as process:
        try:
            out, err = process.communicate(input, timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            out, err = process.communicate()
            if log:
                logging.error(f'"{shlex.join(cmd)}" did not finish within {timeout:g} seconds, killed it.')
            raise subprocess.TimeoutExpired(cmd, timeout, output=out, stderr=err)

    diagnostics = out if captured else err

    if diagnostics:
        for line in diagnostics.rstrip().splitlines():
            logging.debug(f"{cmd[0]}: {line}")

    if check and process.returncode not in success_exit_status:
        if log:
            log_process_failure(cmd, process.returncode, diagnostics)
        raise subprocess.CalledProcessError(process.returncode, cmd, output=out, stderr=err)

    return CompletedProcess(cmd, process.returncode, out, err)


@contextlib.contextmanager
def spawn(
    cmdline: Sequence[PathString],
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
) -> Iterator[Popen]:
    cmd = [os.fspath(x) for x in cmdline]

    if ARG_DEBUG.get():
        logging.info(f"+ {shlex.join(cmd)}")

    if not stdout and not stderr:
        # Unless explicit redirection is done, print all subprocess output on stderr, since we do so as well
        # for our own output.
        stdout = sys.stderr

    if stdin is None:
        stdin = subprocess.DEVNULL

    env = {
        "PATH": os.environ["PATH"],
        "TERM": os.getenv("TERM", "vt220"),
        "LANG": "C.UTF-8",
        **{k: v for k, v in env.items() if k != "LANG" and not k.startswith("LC_")},
    }

    if "TMPDIR" in os.environ:
        env["TMPDIR"] = os.environ["TMPDIR"]

    for e in ("SYSTEMD_LOG_LEVEL", "SYSTEMD_LOG_LOCATION", "SOURCE_DATE_EPOCH"):
        if e in os.environ:
            env[e] = os.environ[e]

    if "HOME" not in env:
        env["HOME"] = "/"

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            text=True,
            env=env,
        )
    except FileNotFoundError as e:
        die(f"{e.filename} not found.")

    try:
        yield proc
        proc.wait()
    except KeyboardInterrupt:
        proc.send_signal(signal.SIGINT)
        raise
    except BaseException:
        proc.terminate()
        raise
    finally:
        # Make sure any SIGINT/SIGTERM signal we sent is actually processed.
        proc.send_signal(signal.SIGCONT)
        proc.wait()


def find_binary(*names: PathString, root: Optional[Path] = None) -> Optional[Path]:
    root = root or Path("/")
    path = ":".join(
        [*os.environ.get("PATH", "").split(":"), os.fspath(root / "usr/bin"), os.fspath(root / "usr/sbin")]
    )

    for name in names:
        if Path(name).is_absolute():
            candidate = root / Path(name).relative_to("/")
            if os.access(candidate, os.X_OK) and candidate.is_file():
                return candidate
            continue

        if binary := shutil.which(name, path=path):
            return Path(binary)

    return None
