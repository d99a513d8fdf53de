"""Tests for shell and git helpers."""

import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from pragent.utils.shell import (
    ShellError,
    get_current_branch,
    get_git_root,
    get_origin_repo,
    parse_github_remote,
    run_command,
)


def completed(returncode=0, stdout="", stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestRunCommand:
    """Test run_command."""

    @patch("pragent.utils.shell.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = completed(stdout="ok\n")

        result = run_command("git status")

        assert result.success
        assert result.stdout == "ok\n"
        assert mock_run.call_args.args[0] == ["git", "status"]

    @patch("pragent.utils.shell.subprocess.run")
    def test_failure_with_check(self, mock_run):
        mock_run.return_value = completed(returncode=128, stderr="fatal")

        with pytest.raises(ShellError) as exc_info:
            run_command(["git", "status"], check=True)

        assert exc_info.value.returncode == 128
        assert exc_info.value.stderr == "fatal"

    @patch("pragent.utils.shell.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("git", 1)

        with pytest.raises(ShellError, match="timed out"):
            run_command("git fetch", timeout=1)

    @patch("pragent.utils.shell.subprocess.run")
    def test_command_not_found(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")

        with pytest.raises(ShellError, match="not found"):
            run_command("git status")


class TestGitHelpers:
    """Test git queries."""

    @patch("pragent.utils.shell.subprocess.run")
    def test_git_root(self, mock_run):
        mock_run.return_value = completed(stdout="/work/repo\n")
        assert get_git_root() == Path("/work/repo")

    @patch("pragent.utils.shell.subprocess.run")
    def test_git_root_outside_repo(self, mock_run):
        mock_run.return_value = completed(returncode=128)
        assert get_git_root() is None

    @patch("pragent.utils.shell.subprocess.run")
    def test_current_branch(self, mock_run):
        mock_run.return_value = completed(stdout="feature/x\n")
        assert get_current_branch() == "feature/x"

    @patch("pragent.utils.shell.subprocess.run")
    def test_detached_head(self, mock_run):
        mock_run.return_value = completed(stdout="\n")
        assert get_current_branch() is None

    @patch("pragent.utils.shell.subprocess.run")
    def test_origin_repo(self, mock_run):
        mock_run.return_value = completed(stdout="git@github.com:acme/widgets.git\n")
        assert get_origin_repo() == "acme/widgets"

    @pytest.mark.parametrize("url,expected", [
        ("git@github.com:acme/widgets.git", "acme/widgets"),
        ("https://github.com/acme/widgets", "acme/widgets"),
        ("https://github.com/acme/widgets.git/", "acme/widgets"),
        ("https://gitlab.com/acme/widgets.git", None),
    ])
    def test_parse_github_remote(self, url, expected):
        assert parse_github_remote(url) == expected
