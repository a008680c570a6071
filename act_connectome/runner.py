"""
External command execution.

Every stage of the workflow is a call to an MRtrix3, FSL or ANTs binary.
``CommandRunner`` runs them one at a time with ``subprocess.run``, skips
stages whose outputs already exist, and checks that each successful command
actually wrote what it was expected to write.
"""

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Sequence

from act_connectome.utils import (
    CommandError,
    MissingExecutableError,
    StageOutputError,
)

logger = logging.getLogger(__name__)

MRTRIX_EXECUTABLES = [
    "mrconvert",
    "dwidenoise",
    "dwibiascorrect",
    "dwi2response",
    "average_response",
    "dwi2mask",
    "maskfilter",
    "dwi2fod",
    "mrmath",
    "transformconvert",
    "mrtransform",
    "5ttgen",
    "5tt2gmwmi",
    "tckgen",
    "tcksift",
    "tck2connectome",
]
FSL_EXECUTABLES = ["robustfov", "bet", "flirt"]
ANTS_EXECUTABLES = ["N4BiasFieldCorrection"]


def format_command(cmd: Sequence) -> str:
    return " ".join(shlex.quote(str(c)) for c in cmd)


def require_executables(names: Iterable[str]) -> None:
    """
    Check every binary in *names* is on PATH.

    Raises
    ------
    MissingExecutableError
        Listing all binaries that were not found.
    """
    missing = sorted({n for n in names if shutil.which(n) is None})
    if missing:
        raise MissingExecutableError(
            "Required executable(s) not found in PATH: " + ", ".join(missing)
        )
    logger.debug("All required executables found on PATH")


class CommandRunner:
    """
    Run external commands sequentially.

    Parameters
    ----------
    dry_run : bool
        Log and record commands without executing them.
    force : bool
        Re-run stages whose outputs already exist; MRtrix3 commands get
        ``-force`` so they overwrite.
    nthreads : int, optional
        Passed to MRtrix3 commands as ``-nthreads``.
    """

    def __init__(self, dry_run: bool = False, force: bool = False,
                 nthreads: int | None = None):
        self.dry_run = dry_run
        self.force = force
        self.nthreads = nthreads
        self.history: list[list[str]] = []

    def _finalize(self, cmd: Sequence, mrtrix: bool) -> list[str]:
        cmd = [str(c) for c in cmd]
        if mrtrix:
            if self.force:
                cmd.append("-force")
            if self.nthreads is not None:
                cmd.extend(["-nthreads", str(self.nthreads)])
        return cmd

    def run(self, cmd: Sequence, outputs: Iterable[Path] = (),
            mrtrix: bool = True) -> bool:
        """
        Run one command.

        Parameters
        ----------
        cmd : sequence
            Program and arguments; items are converted with ``str``.
        outputs : iterable of Path
            Files the command must create. When all of them already exist
            and ``force`` is off, the command is skipped.
        mrtrix : bool
            Whether the program takes MRtrix3 standard options.

        Returns
        -------
        bool
            False when the command was skipped, True otherwise.

        Raises
        ------
        CommandError
            If the program cannot be started or exits non-zero.
        StageOutputError
            If the program exits zero but an output is missing.
        """
        outputs = [Path(p) for p in outputs]
        if outputs and not self.force and all(p.exists() for p in outputs):
            logger.info(
                "Outputs already exist, skipping %s: %s",
                cmd[0], ", ".join(p.name for p in outputs),
            )
            return False

        cmd = self._finalize(cmd, mrtrix)
        self.history.append(cmd)

        if self.dry_run:
            logger.info("[dry-run] %s", format_command(cmd))
            return True

        logger.info("Running: %s", format_command(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc

        if result.stdout and result.stdout.strip():
            logger.debug("%s stdout: %s", cmd[0], result.stdout.strip())
        if result.returncode != 0:
            logger.error("%s failed (return code %d)", cmd[0], result.returncode)
            if result.stderr:
                logger.error("%s stderr: %s", cmd[0], result.stderr.strip())
            raise CommandError(cmd, result.returncode, result.stderr or "")
        if result.stderr and result.stderr.strip():
            logger.debug("%s stderr: %s", cmd[0], result.stderr.strip())

        absent = [str(p) for p in outputs if not p.exists()]
        if absent:
            raise StageOutputError(
                f"{cmd[0]} completed but did not create: {', '.join(absent)}"
            )
        return True
