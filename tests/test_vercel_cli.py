"""Tests for the Vercel CLI and git collaborators with subprocess mocked out."""

import os
import subprocess
from unittest.mock import MagicMock, patch

import pytest

import vercelenv

LISTING = (
    b"Vercel CLI 39.1.0\n"
    b"> Environment Variables found for acme/web [88ms]\n"
    b"\n"
    b" name      value       environments    created\n"
    b" A         Encrypted   Preview         1d ago\n"
    b" B         Encrypted   Preview         2d ago\n"
)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@patch("vercelenv.subprocess.run")
def test_add_passes_value_on_stdin(mock_run):
    mock_run.return_value = completed()
    cli = vercelenv.VercelCLI()
    cli.add("API_KEY", "s3cret", ("preview", "feature-x"))
    args, kwargs = mock_run.call_args
    assert args[0] == ["vercel", "env", "add", "API_KEY", "preview", "feature-x"]
    assert kwargs["input"] == "s3cret"
    assert kwargs["check"] is False


@patch("vercelenv.subprocess.run")
def test_command_string_and_cwd(mock_run):
    mock_run.return_value = completed()
    cli = vercelenv.VercelCLI("npx vercel", cwd="apps/web", timeout=15)
    cli.add("A", "1", ("development",))
    args, kwargs = mock_run.call_args
    assert args[0] == ["npx", "vercel", "--cwd", "apps/web", "env", "add", "A", "development"]
    assert kwargs["timeout"] == 15


@patch("vercelenv.subprocess.run")
def test_add_failure_raises_remote_error(mock_run):
    mock_run.return_value = completed(1, stderr="Error: quota exceeded")
    with pytest.raises(vercelenv.RemoteOperationError, match="quota exceeded"):
        vercelenv.VercelCLI().add("A", "1", ("production",))


@patch("vercelenv.subprocess.run")
def test_missing_binary_raises_remote_error(mock_run):
    mock_run.side_effect = FileNotFoundError("vercel")
    with pytest.raises(vercelenv.RemoteOperationError):
        vercelenv.VercelCLI().add("A", "1", ("production",))


@patch("vercelenv.subprocess.run")
def test_remove_uses_yes(mock_run):
    mock_run.return_value = completed()
    vercelenv.VercelCLI().remove("OLD", ("production",))
    assert mock_run.call_args[0][0] == ["vercel", "env", "rm", "OLD", "production", "--yes"]


@patch("vercelenv.subprocess.run")
def test_remove_not_found_is_distinguished(mock_run):
    mock_run.return_value = completed(1, stderr="Error: Environment Variable OLD was not found.")
    with pytest.raises(vercelenv.RemoteKeyNotFoundError):
        vercelenv.VercelCLI().remove("OLD", ("production",))

    mock_run.return_value = completed(1, stderr="Error: forbidden")
    with pytest.raises(vercelenv.RemoteOperationError) as exc:
        vercelenv.VercelCLI().remove("OLD", ("production",))
    assert not isinstance(exc.value, vercelenv.RemoteKeyNotFoundError)


@patch("vercelenv.subprocess.run")
def test_pull_command_and_failure(mock_run):
    mock_run.return_value = completed()
    vercelenv.VercelCLI().pull(".env.production.local")
    assert mock_run.call_args[0][0] == [
        "vercel",
        "env",
        "pull",
        ".env.production.local",
        "--environment",
        "production",
        "--yes",
    ]

    mock_run.return_value = completed(1, stdout="Error: not linked")
    with pytest.raises(vercelenv.PullError, match="not linked"):
        vercelenv.VercelCLI().pull(".env.production.local")


def _fake_ls(returncode=0, output=LISTING, error=b""):
    """Stand-in for subprocess.run that writes a listing into the staging file."""
    seen = {}

    def run(cmd, stdout=None, stderr=None, check=False, timeout=None):
        seen["cmd"] = cmd
        seen["path"] = stdout.name
        stdout.write(output)
        return subprocess.CompletedProcess(cmd, returncode, None, error)

    return run, seen


def test_list_keys_parses_listing_and_removes_temp_file():
    run, seen = _fake_ls()
    with patch("vercelenv.subprocess.run", side_effect=run):
        keys = vercelenv.VercelCLI().list_keys(("preview", "feature-x"))
    assert keys == ["A", "B"]
    assert seen["cmd"] == ["vercel", "env", "ls", "preview", "feature-x"]
    assert not os.path.exists(seen["path"])


def test_list_keys_failure_removes_temp_file():
    run, seen = _fake_ls(returncode=1, output=b"", error=b"Error: not authorized")
    with patch("vercelenv.subprocess.run", side_effect=run):
        with pytest.raises(vercelenv.RemoteOperationError, match="not authorized"):
            vercelenv.VercelCLI().list_keys(("production",))
    assert not os.path.exists(seen["path"])


def test_list_keys_timeout_removes_temp_file():
    seen = {}

    def run(cmd, stdout=None, **kwargs):
        seen["path"] = stdout.name
        raise subprocess.TimeoutExpired(cmd, 5)

    with patch("vercelenv.subprocess.run", side_effect=run):
        with pytest.raises(vercelenv.RemoteOperationError):
            vercelenv.VercelCLI(timeout=5).list_keys(("production",))
    assert not os.path.exists(seen["path"])


@patch("vercelenv.subprocess.check_output")
def test_git_branch_resolver(mock_check_output):
    mock_check_output.return_value = b"feature-x\n"
    assert vercelenv.GitBranchResolver().current_branch() == "feature-x"
    assert mock_check_output.call_args[0][0] == ["git", "rev-parse", "--abbrev-ref", "HEAD"]


@patch("vercelenv.subprocess.check_output")
def test_git_branch_resolver_outside_repository(mock_check_output):
    mock_check_output.side_effect = subprocess.CalledProcessError(
        128, ["git"], stderr=b"fatal: not a git repository"
    )
    with pytest.raises(vercelenv.BranchResolutionError, match="not a git repository"):
        vercelenv.GitBranchResolver().current_branch()


@patch("vercelenv.subprocess.check_output")
def test_git_branch_resolver_detached_head(mock_check_output):
    mock_check_output.return_value = b"HEAD\n"
    with pytest.raises(vercelenv.BranchResolutionError, match="detached"):
        vercelenv.GitBranchResolver().current_branch()


@patch("vercelenv.subprocess.check_output")
def test_git_missing(mock_check_output):
    mock_check_output.side_effect = FileNotFoundError("git")
    with pytest.raises(vercelenv.BranchResolutionError):
        vercelenv.GitBranchResolver().current_branch()


def test_engine_with_mocked_cli():
    """ReconciliationEngine drives VercelCLI end to end with subprocess mocked."""
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        if cmd[1:3] == ["env", "ls"]:
            kwargs["stdout"].write(LISTING)
            return subprocess.CompletedProcess(cmd, 0, None, b"")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    engine = vercelenv.ReconciliationEngine(vercelenv.VercelCLI(), MagicMock())
    local = {"A": vercelenv.EnvEntry("A", "1"), "C": vercelenv.EnvEntry("C", "3")}
    with patch("vercelenv.subprocess.run", side_effect=run):
        report = engine.push(local, targets=["production"])
    assert report.keys(vercelenv.Action.SKIP) == ["A"]
    assert report.keys(vercelenv.Action.ADD) == ["C"]
    assert ["vercel", "env", "add", "C", "production"] in calls
    engine.reporter.emit.assert_called()


def test_engine_sees_remote_variable_called_name():
    listing = (
        b" name      value       environments    created\n"
        b" NAME      Encrypted   Production      1d ago\n"
        b" OLD       Encrypted   Production      2d ago\n"
    )
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        if cmd[1:3] == ["env", "ls"]:
            kwargs["stdout"].write(listing)
            return subprocess.CompletedProcess(cmd, 0, None, b"")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    engine = vercelenv.ReconciliationEngine(vercelenv.VercelCLI())
    with patch("vercelenv.subprocess.run", side_effect=run):
        pushed = engine.push({"NAME": vercelenv.EnvEntry("NAME", "acme")}, targets=["production"])
        cleaned = engine.clean({}, targets=["production"])
    assert pushed.keys(vercelenv.Action.SKIP) == ["NAME"]
    assert ["vercel", "env", "add", "NAME", "production"] not in calls
    assert cleaned.keys(vercelenv.Action.REMOVE) == ["NAME", "OLD"]
    assert ["vercel", "env", "rm", "NAME", "production", "--yes"] in calls
