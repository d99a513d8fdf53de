"""Shell and git helpers."""

import re
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from pragent.utils.logger import get_logger

logger = get_logger(__name__)

_REMOTE_PATTERN = re.compile(r"github\.com[:/](?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$")


class ShellError(Exception):
    """Shell command execution error."""

    def __init__(self, message: str, returncode: int, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ShellResult:
    """Shell command result."""

    def __init__(self, returncode: int, stdout: str, stderr: str, command: str):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.returncode == 0

    def check(self) -> "ShellResult":
        """Raise ShellError if the command failed.

        Returns:
            Self for chaining
        """
        if not self.success:
            raise ShellError(
                f"Command failed: {self.command}",
                self.returncode,
                self.stdout,
                self.stderr,
            )
        return self


def run_command(
    command: Union[str, List[str]],
    cwd: Optional[Union[str, Path]] = None,
    check: bool = False,
    timeout: Optional[float] = None,
) -> ShellResult:
    """Run a command synchronously and capture its output.

    Args:
        command: Command to execute
        cwd: Working directory
        check: Raise exception on failure
        timeout: Command timeout in seconds

    Returns:
        Command result

    Raises:
        ShellError: If command fails and check=True
    """
    if isinstance(command, str):
        command_str = command
        command_list = command.split()
    else:
        command_str = " ".join(command)
        command_list = command

    logger.debug(f"Running command: {command_str} (cwd: {cwd})")

    try:
        result = subprocess.run(
            command_list,
            cwd=Path(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ShellError(f"Command timed out: {command_str}", -1, "", str(e))
    except FileNotFoundError as e:
        raise ShellError(f"Command not found: {command_str}", -1, "", str(e))

    shell_result = ShellResult(
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        command=command_str,
    )
    if not shell_result.success:
        logger.debug(f"Command failed with code {result.returncode}: {command_str}")

    if check:
        shell_result.check()

    return shell_result


def get_git_root(cwd: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Get git repository root directory.

    Returns:
        Git root path or None if not in a git repo
    """
    try:
        result = run_command("git rev-parse --show-toplevel", cwd=cwd, check=True)
        return Path(result.stdout.strip())
    except ShellError:
        return None


def get_current_branch(cwd: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Get current git branch name, or None outside a repository."""
    try:
        result = run_command("git branch --show-current", cwd=cwd, check=True)
        return result.stdout.strip() or None
    except ShellError:
        return None


def parse_github_remote(url: str) -> Optional[str]:
    """Extract ``owner/name`` from a GitHub remote URL.

    Handles both ``git@github.com:owner/name.git`` and
    ``https://github.com/owner/name`` forms.
    """
    match = _REMOTE_PATTERN.search(url.strip())
    if not match:
        return None
    return f"{match.group('owner')}/{match.group('name')}"


def get_origin_repo(cwd: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Get ``owner/name`` of the origin remote, if it points at GitHub."""
    try:
        result = run_command("git remote get-url origin", cwd=cwd, check=True)
    except ShellError:
        return None
    return parse_github_remote(result.stdout)
