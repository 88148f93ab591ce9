#!/usr/bin/env python3
"""
Execution of external neuroimaging tools.

Every dcm2niix / FSL / oxford_asl call goes through :class:`CommandRunner`
so that exit codes are checked, an optional per-command timeout applies and
failures are reported with the stage that issued them.
"""

import logging
import shlex
import shutil
import subprocess
from typing import Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class PipelineStageError(RuntimeError):
    """
    Raised when a pipeline stage fails.

    Attributes
    ----------
    stage : str
        Name of the stage that failed
    command : list of str, optional
        External command that failed, if any
    returncode : int, optional
        Exit status of the command (None for timeouts / missing outputs)
    stderr : str, optional
        Captured standard error
    """

    def __init__(
        self,
        stage: str,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None
    ):
        self.stage = stage
        self.command = list(command) if command is not None else None
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"[{stage}] {message}")

    @property
    def command_line(self) -> str:
        if not self.command:
            return ''
        return ' '.join(shlex.quote(str(part)) for part in self.command)


class CommandRunner:
    """
    Run external commands, one at a time, blocking until each exits.

    Parameters
    ----------
    timeout : float, optional
        Seconds allowed per command; expiry is a stage failure
    env : dict, optional
        Environment for the child processes (see ``get_fsl_env``)

    Examples
    --------
    >>> runner = CommandRunner(timeout=3600, env=get_fsl_env(config))
    >>> runner.run('brain_extraction', ['bet', 'pdw.nii.gz', 'pdw_brain.nii.gz', '-f', '0.5'])
    """

    def __init__(self, timeout: Optional[float] = None, env: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.env = env
        self.history: List[List[str]] = []

    def run(self, stage: str, cmd: Sequence[str]) -> subprocess.CompletedProcess:
        """
        Run one command and return the completed process.

        Raises
        ------
        PipelineStageError
            If the executable is missing, exits non-zero or times out
        """
        cmd = [str(part) for part in cmd]
        self.history.append(cmd)
        logger.debug(f"  $ {' '.join(shlex.quote(part) for part in cmd)}")

        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=self.env
            )
        except FileNotFoundError as e:
            raise PipelineStageError(
                stage, f"{cmd[0]} not found. Is it installed and on PATH?", command=cmd
            ) from e
        except subprocess.TimeoutExpired as e:
            logger.error(f"{cmd[0]} timed out after {self.timeout} s")
            raise PipelineStageError(
                stage, f"{cmd[0]} timed out after {self.timeout} s", command=cmd
            ) from e
        except subprocess.CalledProcessError as e:
            logger.error(f"{cmd[0]} failed with exit status {e.returncode}")
            if e.stdout:
                logger.error(f"STDOUT: {e.stdout.strip()}")
            if e.stderr:
                logger.error(f"STDERR: {e.stderr.strip()}")
            raise PipelineStageError(
                stage,
                f"{cmd[0]} exited with status {e.returncode}",
                command=cmd,
                returncode=e.returncode,
                stderr=e.stderr
            ) from e

        if result.stdout and result.stdout.strip():
            logger.debug(f"    {result.stdout.strip()}")
        return result

    def check_tools(self, tools: Iterable[str]) -> List[str]:
        """Return the tools that cannot be found on PATH."""
        return [tool for tool in tools if shutil.which(tool) is None]
