"""Synchronous external command execution with a hard timeout."""
import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger("flux_media.commands")


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def run_command(cmd: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
    """
    Run cmd and capture its output. Never raises for process-level problems:
    a missing binary gives exit_code 127, an exceeded timeout kills the process
    and sets timed_out.
    """
    cmd_list = [str(part) for part in cmd]
    logger.debug("Running: %s", shlex.join(cmd_list))
    try:
        completed = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        logger.debug("Executable not found for %s: %s", cmd_list[0], e)
        return CommandResult(exit_code=127, stderr=str(e))
    except PermissionError as e:
        logger.debug("Executable not runnable for %s: %s", cmd_list[0], e)
        return CommandResult(exit_code=126, stderr=str(e))
    except subprocess.TimeoutExpired as e:
        logger.error("Command timed out after %ss: %s", timeout, cmd_list[0])
        stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        return CommandResult(exit_code=-1, stderr=stderr, timed_out=True)
    except OSError as e:
        logger.error("Could not start %s: %s", cmd_list[0], e)
        return CommandResult(exit_code=-1, stderr=str(e))
    return CommandResult(exit_code=completed.returncode, stdout=completed.stdout or "", stderr=completed.stderr or "")
