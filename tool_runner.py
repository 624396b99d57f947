#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
External tool invocation for the part 2 dada2 runner.

Every external program (R, the PECAN classifier, the count-table annotators)
is described by a ``ToolRequest`` and executed by a runner callable that
returns a ``ToolResult``. The default runner is ``run_tool``, which shells
out with ``subprocess``; tests inject their own runner instead.

Success of the R engine is judged on two things: a zero exit status AND no
error marker in its textual log (see ``scan_log_for_errors``).
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional


ERROR_MARKER = "Error"
BENIGN_MARKER = "learnErrors"


@dataclass(frozen=True)
class ToolRequest:
    """A single external program invocation.

    Attributes
    ----------
    executable : str
        Program name or path.
    args : tuple of str
        Arguments passed after the executable.
    cwd : pathlib.Path
        Working directory for the process.
    env : dict
        Extra environment variables for this process only.
    log_file : pathlib.Path or None
        Log the tool writes itself (e.g. ``R CMD BATCH`` output). When set,
        it is scanned for error markers after the process exits.
    """

    executable: str
    args: tuple[str, ...] = ()
    cwd: Path = Path(".")
    env: Dict[str, str] = field(default_factory=dict)
    log_file: Optional[Path] = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def command_line(self) -> str:
        return " ".join(shlex.quote(tok) for tok in self.argv)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a ``ToolRequest``."""

    request: ToolRequest
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def log_file(self) -> Optional[Path]:
        return self.request.log_file


ToolRunner = Callable[[ToolRequest], ToolResult]


class ToolFailure(RuntimeError):
    """An external tool exited non-zero or logged an error marker."""

    def __init__(
        self,
        *,
        request: ToolRequest,
        returncode: int,
        error_line: Optional[str] = None,
        log_file: Optional[Path] = None,
    ) -> None:
        self.request = request
        self.returncode = returncode
        self.error_line = error_line
        self.log_file = log_file
        if error_line is not None:
            msg = f"{request.executable} crashed at\n{error_line}"
            if returncode != 0:
                msg += f"\nexit code: {returncode}"
        else:
            msg = f"{request.command_line()} failed with exit code: {returncode}"
        if log_file is not None:
            msg += f"\ncheck {log_file} for details"
        super().__init__(msg)

    @property
    def exit_status(self) -> int:
        """Exit status the pipeline should terminate with.

        A tool killed by signal N (negative return code) maps to 128 + N,
        the shell convention; a log-only failure maps to 1.
        """
        if self.returncode < 0:
            return 128 - self.returncode
        return self.returncode if self.returncode != 0 else 1


# ----------------------------- log scanning ----------------------------- #

def find_error_line(lines: Iterable[str]) -> Optional[str]:
    """
    Return the first line that carries an error marker, or None.

    A line containing ``learnErrors`` is a dada2 progress label and is never
    treated as a failure, even if it also contains ``Error``.

    Parameters
    ----------
    lines : iterable of str
        Log lines, with or without trailing newlines.

    Returns
    -------
    str or None
        The offending line with its line ending stripped.
    """
    for line in lines:
        if BENIGN_MARKER in line:
            continue
        if ERROR_MARKER in line:
            return line.rstrip("\n\r")
    return None


def scan_log_for_errors(log_file: Path) -> Optional[str]:
    """Scan a tool log on disk; see ``find_error_line``."""
    with log_file.open("r", encoding="utf-8", errors="replace") as fh:
        return find_error_line(fh)


# ----------------------------- execution ----------------------------- #

def run_tool(request: ToolRequest) -> ToolResult:
    """
    Execute a request with ``subprocess`` and wait for it to finish.

    There is no timeout: a stuck tool stalls the pipeline, which is expected
    for supervised runs.
    """
    env = dict(os.environ)
    env.update(request.env)
    proc = subprocess.run(
        request.argv,
        cwd=str(request.cwd),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    return ToolResult(
        request=request,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def ensure_success(result: ToolResult, *, scan_log: bool = False) -> ToolResult:
    """
    Raise ``ToolFailure`` unless the tool exited 0 (and, when asked, its log
    holds no error marker).

    When ``scan_log`` is set the log is read first, so a crash that also
    exits non-zero still reports the offending log line.

    Parameters
    ----------
    result : ToolResult
        Result to check.
    scan_log : bool
        If True, the request's ``log_file`` must exist and is scanned.

    Raises
    ------
    ToolFailure
        On non-zero exit status or a detected error marker.
    """
    request = result.request
    error_line: Optional[str] = None
    if scan_log and request.log_file is not None:
        if request.log_file.exists():
            error_line = scan_log_for_errors(request.log_file)
        elif result.returncode == 0:
            error_line = f"no log written at {request.log_file}"
    if result.returncode != 0 or error_line is not None:
        raise ToolFailure(
            request=request,
            returncode=result.returncode,
            error_line=error_line,
            log_file=request.log_file,
        )
    return result


def invoke(
    *,
    request: ToolRequest,
    runner: ToolRunner,
    logger: logging.Logger,
    dry_run: bool = False,
    echo: bool = False,
    scan_log: bool = False,
) -> Optional[ToolResult]:
    """
    Log, run and check one external tool.

    With ``dry_run`` the command line is printed and nothing is executed
    (returns None).
    """
    if dry_run or echo:
        logger.info("\tcmd=%s", request.command_line())
    if dry_run:
        return None
    logger.info("▶ %s", request.command_line())
    result = runner(request)
    if result.stdout:
        logger.debug("%s stdout:\n%s", request.executable, result.stdout.rstrip())
    if result.stderr:
        logger.debug("%s stderr:\n%s", request.executable, result.stderr.rstrip())
    return ensure_success(result, scan_log=scan_log)
