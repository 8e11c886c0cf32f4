#!/usr/bin/env python3
"""
vercelenv - Keep a local .env file in sync with Vercel environment variables.

This module provides functionality to:
- Push keys from .env.local to the development, preview and production targets
  (skip keys that already exist, or replace them with --replace)
- Pull the production variables into .env.production.local
- Clean remote keys that are no longer present in .env.local
- List the remote keys of every target
- Scope the preview target to the current git branch (--branch-preview)

The Vercel CLI does the actual remote work; this tool only decides which
keys to add, replace or remove and reports every decision.

Exit codes:
- 0: Success (individual per-key failures are reported but do not fail the run)
- 1: Unrecoverable error (missing source file, branch lookup, pull, config)
- 2: Unknown command-line flag
"""

import argparse
import json
import os
import shlex
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

TARGETS: Tuple[str, ...] = ("development", "preview", "production")
PREVIEW = "preview"
PRODUCTION = "production"

DEFAULT_SOURCE_FILE = ".env.local"
DEFAULT_PULL_FILE = ".env.production.local"
DEFAULT_CONFIG_FILE = ".vercelenv.yml"

# Execution order of the top-level operations, independent of flag order
OPERATION_ORDER: Tuple[str, ...] = ("push", "pull", "clean", "list")
DEFAULT_OPERATIONS: Tuple[str, ...] = ("push", "pull", "clean")

Scope = Tuple[str, ...]


# --- Errors ---


class VercelEnvError(Exception):
    """Base class for vercelenv errors; main() maps them to exit_code."""

    exit_code = 1


class UnknownFlagError(VercelEnvError):
    """An invocation token that is not a recognised flag."""

    exit_code = 2


class ConfigError(VercelEnvError):
    """The configuration file is unreadable or invalid."""


class SourceFileMissingError(VercelEnvError, FileNotFoundError):
    """The local environment file does not exist."""


class SourceFileUnreadableError(VercelEnvError):
    """The local environment file exists but cannot be read as UTF-8 text."""


class BranchResolutionError(VercelEnvError):
    """The current git branch could not be determined."""


class RemoteOperationError(VercelEnvError):
    """A single call to the remote variable store failed."""


class RemoteKeyNotFoundError(RemoteOperationError):
    """The key to remove is not stored remotely (benign during clean)."""


class PullError(RemoteOperationError):
    """The bulk download of a target's variables failed."""


# --- Data model ---


@dataclass(frozen=True)
class EnvEntry:
    key: str
    value: str


class Action(str, Enum):
    """Classification of one reported status line."""

    ADD = "ADD"
    SKIP = "SKIP"
    UPDATE = "UPDATE"
    REMOVE = "REMOVE"
    ERROR = "ERROR"
    PULL = "PULL"
    CLEAN = "CLEAN"
    LIST = "LIST"


@dataclass(frozen=True)
class SyncEvent:
    action: Action
    scope: Scope
    key: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "scope": list(self.scope),
            "key": self.key,
            "detail": self.detail,
        }


@dataclass
class SyncReport:
    """All events emitted by one push, pull, clean or list operation."""

    operation: str
    events: List[SyncEvent] = field(default_factory=list)

    def count(self, action: Action) -> int:
        return sum(1 for e in self.events if e.action == action)

    def keys(self, action: Action, scope: Optional[Scope] = None) -> List[str]:
        """
        Keys reported with the given action, optionally restricted to one scope.

        Example:
            >>> report.keys(Action.REMOVE, ("production",))
            ['B', 'C']
        """
        return [
            e.key
            for e in self.events
            if e.action == action and e.key is not None and (scope is None or e.scope == scope)
        ]

    def summary(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in self.events:
            out[e.action.value] = out.get(e.action.value, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "events": [e.to_dict() for e in self.events],
        }


def scope_label(scope: Scope) -> str:
    """
    Render a scope the way it is passed to the Vercel CLI.

    Examples:
        >>> scope_label(("preview", "feature-x"))
        'preview feature-x'
        >>> scope_label(("production",))
        'production'
    """
    return " ".join(scope)


# --- Env file reader ---
# The local source file holds one KEY=VALUE pair per line


def is_env_key(key: str) -> bool:
    """
    Check whether a string is an identifier-like environment variable name.

    Examples:
        >>> is_env_key("DATABASE_URL")
        True
        >>> is_env_key("9LIVES")
        False
    """
    if not key or not (key[0].isalpha() or key[0] == "_"):
        return False
    return all(c.isalnum() or c == "_" for c in key) and key.isascii()


def parse_env_line(line: str) -> Optional[EnvEntry]:
    """
    Parse one line of the source file into an EnvEntry.

    Args:
        line: A single line, without its trailing newline

    Returns:
        EnvEntry, or None for blank lines, comments and malformed lines

    Notes:
        - The line is split on the first "=" only; no escaping is supported
        - A line-terminating carriage return (CRLF files) is dropped first
        - One leading and one trailing double quote are stripped when both
          are present; unbalanced quotes are kept
        - Every remaining carriage return is removed from the value

    Examples:
        >>> parse_env_line('FOO="bar"')
        EnvEntry(key='FOO', value='bar')
        >>> parse_env_line("# comment") is None
        True
    """
    if line.endswith("\r"):
        line = line[:-1]
    if not line.strip() or line.startswith("#"):
        return None
    if "=" not in line:
        return None
    key, value = line.split("=", 1)
    key = key.strip()
    if not is_env_key(key):
        return None
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    return EnvEntry(key, value.replace("\r", ""))


def read_env_text(text: str) -> List[EnvEntry]:
    """
    Parse source file content into entries, in file order.

    Lines are split on "\\n" only so that a lone carriage return inside a
    value is stripped from the value instead of starting a new line.
    Duplicated keys are all returned; see load_local_env for deduplication.
    """
    entries: List[EnvEntry] = []
    for raw in text.split("\n"):
        entry = parse_env_line(raw)
        if entry is not None:
            entries.append(entry)
    return entries


def parse_env_file(path: str) -> List[EnvEntry]:
    """
    Read and parse the local source file.

    Args:
        path: Path to the source file (conventionally .env.local)

    Returns:
        Ordered list of EnvEntry

    Raises:
        SourceFileMissingError: If the file does not exist
        SourceFileUnreadableError: If the file cannot be read or is not UTF-8
    """
    if not os.path.isfile(path):
        raise SourceFileMissingError(f"source file not found: {path}")
    try:
        # newline="" keeps carriage returns so read_env_text can strip them itself
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise SourceFileUnreadableError(f"cannot read source file {path}: {e}") from e
    return read_env_text(text)


def load_local_env(path: str) -> Dict[str, EnvEntry]:
    """
    Build the local key set of one operation.

    The last occurrence of a duplicated key wins; the key keeps the position
    of its first occurrence.
    """
    local: Dict[str, EnvEntry] = {}
    for entry in parse_env_file(path):
        local[entry.key] = entry
    return local


# --- Configuration ---
# Defaults < YAML config file < command-line flags

CONFIG_KEYS = {
    "source_file": str,
    "pull_file": str,
    "vercel": str,
    "cwd": str,
    "timeout": (int, float),
    "branch_preview": bool,
    "replace": bool,
}


@dataclass
class Settings:
    source_file: str = DEFAULT_SOURCE_FILE
    pull_file: str = DEFAULT_PULL_FILE
    vercel: str = "vercel"
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    branch_preview: bool = False
    replace: bool = False


def read_config_text(text: str) -> Dict[str, Any]:
    """
    Parse and validate YAML configuration content.

    Args:
        text: YAML document

    Returns:
        Mapping of recognised configuration keys to values

    Raises:
        ConfigError: If the document is not a mapping, has unknown keys or
            wrongly typed values

    Example:
        >>> read_config_text("source_file: .env\\nbranch_preview: true\\n")
        {'source_file': '.env', 'branch_preview': True}
    """
    import yaml

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("top-level YAML must be a mapping")

    unknown = sorted(str(k) for k in data if k not in CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
    for k, v in data.items():
        expected = CONFIG_KEYS[k]
        # bool is an int subclass; a timeout of `true` is still a mistake
        if not isinstance(v, expected) or (expected is not bool and isinstance(v, bool)):
            raise ConfigError(f"config key {k!r} has invalid value {v!r}")
    return dict(data)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from the YAML config file, falling back to defaults.

    Args:
        config_path: Explicit config file; when None, DEFAULT_CONFIG_FILE is
            read if it exists

    Raises:
        ConfigError: If an explicit config file is missing or any config is invalid
    """
    settings = Settings()
    path = config_path
    if path is None:
        if not os.path.isfile(DEFAULT_CONFIG_FILE):
            return settings
        path = DEFAULT_CONFIG_FILE
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    for k, v in read_config_text(text).items():
        setattr(settings, k, v)
    return settings


# --- Source-control collaborator ---


class BranchResolver(Protocol):
    def current_branch(self) -> str: ...


class GitBranchResolver:
    """Reads the current branch name of the git working copy."""

    def __init__(self, cwd: Optional[str] = None, timeout: int = 30):
        self.cwd = cwd
        self.timeout = timeout

    def current_branch(self) -> str:
        """
        Return the checked-out branch name.

        Raises:
            BranchResolutionError: Outside a repository, on a detached HEAD, or
                when git is missing or fails
        """
        cmd = ["git", "rev-parse", "--abbrev-ref", "HEAD"]
        try:
            out = subprocess.check_output(
                cmd, cwd=self.cwd, stderr=subprocess.PIPE, timeout=self.timeout
            )
        except subprocess.CalledProcessError as e:
            msg = (e.stderr or b"").decode("utf-8", errors="replace").strip()
            raise BranchResolutionError(f"git branch lookup failed: {msg or e}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BranchResolutionError(f"git branch lookup failed: {e}") from e
        branch = out.decode("utf-8", errors="replace").strip()
        if not branch or branch == "HEAD":
            raise BranchResolutionError("not on a branch (detached HEAD)")
        return branch


# --- Remote client collaborator ---


class RemoteVariableStore(Protocol):
    def list_keys(self, scope: Scope) -> List[str]: ...

    def add(self, key: str, value: str, scope: Scope) -> None: ...

    def remove(self, key: str, scope: Scope) -> None: ...

    def pull(self, path: str, target: str = PRODUCTION) -> None: ...


def parse_env_listing(text: str) -> List[str]:
    """
    Extract key names from `vercel env ls` output.

    Args:
        text: Captured stdout of the listing command

    Returns:
        Key names in listing order (duplicates kept)

    Notes:
        - The key is the first column of each table row
        - Banner lines ("Vercel CLI ...", "> ..."), the "name value ..."
          header row, blank lines and tokens that are not variable names
          are skipped

    Example:
        >>> parse_env_listing("Vercel CLI 39.1.0\\n> Environment Variables found\\n\\n"
        ...                   " name   value\\n API_KEY   Encrypted\\n")
        ['API_KEY']
    """
    keys: List[str] = []
    header_seen = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(">") or line.startswith("Vercel CLI"):
            continue
        columns = line.split()
        # the header row only; a variable called "name" or "NAME" is a real key
        if not header_seen and columns[:2] == ["name", "value"]:
            header_seen = True
            continue
        if not is_env_key(columns[0]):
            continue
        keys.append(columns[0])
    return keys


class VercelCLI:
    """
    RemoteVariableStore backed by the `vercel` command-line client.

    Args:
        command: Command used to invoke the client, split shell-style
            (e.g. "vercel" or "npx vercel")
        cwd: Optional project directory passed as --cwd
        timeout: Optional per-call timeout in seconds
    """

    def __init__(self, command: str = "vercel", cwd: Optional[str] = None, timeout: Optional[float] = None):
        self.base = shlex.split(command)
        self.cwd = cwd
        self.timeout = timeout

    def _cmd(self, args: Sequence[str]) -> List[str]:
        cmd = list(self.base)
        if self.cwd:
            cmd += ["--cwd", self.cwd]
        return cmd + list(args)

    def _run(self, args: Sequence[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = self._cmd(args)
        try:
            proc = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RemoteOperationError(f"{' '.join(cmd)}: {e}") from e
        if proc.returncode != 0:
            raise RemoteOperationError(_failure_message(proc))
        return proc

    def list_keys(self, scope: Scope) -> List[str]:
        """
        List the keys stored for a scope.

        The listing is staged in a temporary file that is removed on every
        exit path.
        """
        cmd = self._cmd(["env", "ls", *scope])
        tmp = tempfile.NamedTemporaryFile(prefix="vercelenv_ls_", delete=False)
        try:
            with tmp:
                try:
                    proc = subprocess.run(
                        cmd, stdout=tmp, stderr=subprocess.PIPE, check=False, timeout=self.timeout
                    )
                except (OSError, subprocess.TimeoutExpired) as e:
                    raise RemoteOperationError(f"{' '.join(cmd)}: {e}") from e
            if proc.returncode != 0:
                stderr = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
                raise RemoteOperationError(stderr or f"vercel env ls exited with {proc.returncode}")
            with open(tmp.name, encoding="utf-8", errors="replace") as f:
                return parse_env_listing(f.read())
        finally:
            try:
                os.unlink(tmp.name)
            except OSError:
                pass

    def add(self, key: str, value: str, scope: Scope) -> None:
        self._run(["env", "add", key, *scope], input_text=value)

    def remove(self, key: str, scope: Scope) -> None:
        try:
            self._run(["env", "rm", key, *scope, "--yes"])
        except RemoteOperationError as e:
            if "not found" in str(e).lower():
                raise RemoteKeyNotFoundError(str(e)) from e
            raise

    def pull(self, path: str, target: str = PRODUCTION) -> None:
        try:
            self._run(["env", "pull", path, "--environment", target, "--yes"])
        except RemoteOperationError as e:
            raise PullError(str(e)) from e


def _failure_message(proc: subprocess.CompletedProcess) -> str:
    out = (proc.stderr or "").strip() or (proc.stdout or "").strip()
    return out or f"vercel exited with {proc.returncode}"


# --- Target scope resolver ---


def resolve_scope(target: str, branch_scoped: bool, branch_resolver: Optional[BranchResolver] = None) -> Scope:
    """
    Map a target to the scope passed to every remote call.

    Args:
        target: One of TARGETS
        branch_scoped: Whether preview is partitioned by git branch
        branch_resolver: Source of the current branch (required when the
            preview target is branch scoped)

    Returns:
        (target,) or ("preview", branch)

    Raises:
        ValueError: If target is not one of TARGETS
        BranchResolutionError: If the branch cannot be determined

    Examples:
        >>> resolve_scope("production", True)
        ('production',)
    """
    if target not in TARGETS:
        raise ValueError(f"unknown target: {target}")
    if target != PREVIEW or not branch_scoped:
        return (target,)
    if branch_resolver is None:
        raise BranchResolutionError("branch-scoped preview requires a branch resolver")
    return (PREVIEW, branch_resolver.current_branch())


class ScopeResolver:
    """Resolves scopes for one operation, reading the branch at most once."""

    def __init__(self, branch_scoped: bool, branch_resolver: Optional[BranchResolver] = None):
        self.branch_scoped = branch_scoped
        self.branch_resolver = branch_resolver
        self._branch: Optional[str] = None

    def current_branch(self) -> str:
        if self._branch is None:
            if self.branch_resolver is None:
                raise BranchResolutionError("branch-scoped preview requires a branch resolver")
            self._branch = self.branch_resolver.current_branch()
        return self._branch

    def resolve(self, target: str) -> Scope:
        return resolve_scope(target, self.branch_scoped, self)


def select_targets(targets: Iterable[str]) -> List[str]:
    """
    Order requested targets by TARGETS, rejecting unknown names.

    Example:
        >>> select_targets(["production", "development"])
        ['development', 'production']
    """
    wanted = set(targets)
    unknown = sorted(wanted - set(TARGETS))
    if unknown:
        raise ValueError(f"unknown targets: {', '.join(unknown)}")
    return [t for t in TARGETS if t in wanted]


# --- Reporter ---

_ESC = "\033"
_RESET = f"{_ESC}[0m"

# action -> (glyph, color, bold color)
ACTION_STYLES: Dict[Action, Tuple[str, str, str]] = {
    Action.ADD: ("✅", "0;32", "1;32"),
    Action.SKIP: ("⚠️", "0;33", "1;33"),
    Action.UPDATE: ("🔁", "0;34", "1;34"),
    Action.REMOVE: ("❌", "0;31", "1;31"),
    Action.ERROR: ("⛔", "1;31", "1;31"),
    Action.PULL: ("🔄", "0;34", "1;34"),
    Action.CLEAN: ("🧹", "0;34", "1;34"),
    Action.LIST: ("📋", "0;34", "1;34"),
}


def format_status(
    action: Action, scope: Scope, key: Optional[str] = None, detail: Optional[str] = None, color: bool = True
) -> str:
    """
    Format one status line.

    Args:
        action: Classification of the line
        scope: Scope the action applies to
        key: Variable name (or file name for PULL); omitted when None
        detail: Optional trailing explanation (error message, note)
        color: Wrap the label and key in ANSI color codes

    Returns:
        A single line such as "✅ ADD [development]: API_KEY"

    Example:
        >>> format_status(Action.SKIP, ("preview", "main"), "A", color=False)
        '⚠️ SKIP [preview main]: A'
    """
    glyph, tone, bold = ACTION_STYLES[action]
    label = f"{glyph} {action.value}"
    if color:
        label = f"{_ESC}[{tone}m{label}{_RESET}"
    line = f"{label} [{scope_label(scope)}]"
    if key is not None:
        shown = f"{_ESC}[{bold}m{key}{_RESET}" if color else key
        line += f": {shown}"
    if detail:
        line += f" ({detail})"
    return line


class Reporter(Protocol):
    def emit(self, event: SyncEvent) -> None: ...


class ConsoleReporter:
    """Prints one formatted line per event; errors go to stderr."""

    def __init__(self, stream=None, color: Optional[bool] = None):
        self.stream = stream
        self.color = color

    def _use_color(self, stream) -> bool:
        if self.color is not None:
            return self.color
        if "NO_COLOR" in os.environ:
            return False
        isatty = getattr(stream, "isatty", None)
        return bool(isatty and isatty())

    def emit(self, event: SyncEvent) -> None:
        stream = self.stream
        if stream is None:
            stream = sys.stderr if event.action == Action.ERROR else sys.stdout
        line = format_status(event.action, event.scope, event.key, event.detail, self._use_color(stream))
        print(line, file=stream)


class NullReporter:
    def emit(self, event: SyncEvent) -> None:
        pass


class RecordingReporter:
    """Keeps every event in memory, e.g. for JSON output."""

    def __init__(self):
        self.events: List[SyncEvent] = []

    def emit(self, event: SyncEvent) -> None:
        self.events.append(event)


# --- Reconciliation engine ---


class ReconciliationEngine:
    """
    Diffs the local key set against the remote key set of every scope and
    applies the resulting additions, replacements and removals.

    Remote keys are listed fresh for every scope of every operation. Per-key
    failures are reported as ERROR events and never stop the iteration;
    BranchResolutionError always propagates.

    Args:
        store: Remote variable store (VercelCLI in production)
        reporter: Receives every event as it happens (default: no output)
        branch_resolver: Source of the git branch for branch-scoped preview
    """

    def __init__(
        self,
        store: RemoteVariableStore,
        reporter: Optional[Reporter] = None,
        branch_resolver: Optional[BranchResolver] = None,
    ):
        self.store = store
        self.reporter = reporter or NullReporter()
        self.branch_resolver = branch_resolver

    def _emit(self, report: SyncReport, action: Action, scope: Scope, key=None, detail=None) -> None:
        event = SyncEvent(action, scope, key, detail)
        report.events.append(event)
        self.reporter.emit(event)

    def _remote_keys(self, report: SyncReport, scope: Scope) -> Optional[List[str]]:
        try:
            return self.store.list_keys(scope)
        except RemoteOperationError as e:
            self._emit(report, Action.ERROR, scope, None, f"list failed: {e}")
            return None

    def push(
        self,
        local: Dict[str, EnvEntry],
        targets: Iterable[str] = TARGETS,
        branch_scoped: bool = False,
        replace: bool = False,
        report: Optional[SyncReport] = None,
    ) -> SyncReport:
        """
        Upload local keys to every target scope.

        Args:
            local: Local key set, in source-file order
            targets: Targets to process (always visited in TARGETS order)
            branch_scoped: Partition preview by the current git branch
            replace: Remove and re-add keys that already exist remotely
            report: Report to fill in place (default: a new one)

        Returns:
            SyncReport with one ADD, SKIP, UPDATE or ERROR event per key and scope
        """
        report = report or SyncReport("push")
        scopes = ScopeResolver(branch_scoped, self.branch_resolver)
        for target in select_targets(targets):
            scope = scopes.resolve(target)
            listed = self._remote_keys(report, scope)
            if listed is None:
                continue
            remote = set(listed)
            for entry in local.values():
                if entry.key not in remote:
                    self._add(report, entry, scope)
                elif not replace:
                    self._emit(report, Action.SKIP, scope, entry.key)
                else:
                    self._replace(report, entry, scope)
        return report

    def _add(self, report: SyncReport, entry: EnvEntry, scope: Scope) -> None:
        try:
            self.store.add(entry.key, entry.value, scope)
        except RemoteOperationError as e:
            self._emit(report, Action.ERROR, scope, entry.key, f"add failed: {e}")
            return
        self._emit(report, Action.ADD, scope, entry.key)

    def _replace(self, report: SyncReport, entry: EnvEntry, scope: Scope) -> None:
        # The store has no update primitive: remove, then add the local value
        try:
            try:
                self.store.remove(entry.key, scope)
            except RemoteKeyNotFoundError:
                pass
            self.store.add(entry.key, entry.value, scope)
        except RemoteOperationError as e:
            self._emit(report, Action.ERROR, scope, entry.key, f"replace failed: {e}")
            return
        self._emit(report, Action.UPDATE, scope, entry.key)

    def clean(
        self,
        local: Dict[str, EnvEntry],
        targets: Iterable[str] = TARGETS,
        branch_scoped: bool = False,
        report: Optional[SyncReport] = None,
    ) -> SyncReport:
        """
        Remove remote keys that are absent from the local key set.

        Remote keys are visited in listing order without deduplication; a
        repeated key whose second removal reports "not found" is skipped.
        Keys present on both sides are never touched.
        """
        report = report or SyncReport("clean")
        scopes = ScopeResolver(branch_scoped, self.branch_resolver)
        for target in select_targets(targets):
            scope = scopes.resolve(target)
            self._emit(report, Action.CLEAN, scope, None, "stale check")
            listed = self._remote_keys(report, scope)
            if listed is None:
                continue
            for key in listed:
                if key in local:
                    continue
                try:
                    self.store.remove(key, scope)
                except RemoteKeyNotFoundError:
                    self._emit(report, Action.SKIP, scope, key, "already absent")
                except RemoteOperationError as e:
                    self._emit(report, Action.ERROR, scope, key, f"remove failed: {e}")
                else:
                    self._emit(report, Action.REMOVE, scope, key)
        return report

    def list_remote(
        self,
        targets: Iterable[str] = TARGETS,
        branch_scoped: bool = False,
        report: Optional[SyncReport] = None,
    ) -> SyncReport:
        report = report or SyncReport("list")
        scopes = ScopeResolver(branch_scoped, self.branch_resolver)
        for target in select_targets(targets):
            scope = scopes.resolve(target)
            listed = self._remote_keys(report, scope)
            for key in listed or []:
                self._emit(report, Action.LIST, scope, key)
        return report


# --- Pull ---


def pull_env(
    store: RemoteVariableStore,
    path: str = DEFAULT_PULL_FILE,
    reporter: Optional[Reporter] = None,
    target: str = PRODUCTION,
    report: Optional[SyncReport] = None,
) -> SyncReport:
    """
    Download a target's variables into a local file, overwriting it.

    Args:
        store: Remote variable store
        path: Destination file (conventionally .env.production.local)
        reporter: Receives the PULL line and, on failure, the ERROR line
        target: Target to download (production)
        report: Report to fill in place (default: a new one)

    Returns:
        SyncReport for the pull

    Raises:
        PullError: If the download fails; there is no partial success
    """
    reporter = reporter or NullReporter()
    report = report or SyncReport("pull")
    scope = (target,)

    def emit(event: SyncEvent) -> None:
        report.events.append(event)
        reporter.emit(event)

    emit(SyncEvent(Action.PULL, scope, path))
    try:
        store.pull(path, target)
    except RemoteOperationError as e:
        emit(SyncEvent(Action.ERROR, scope, path, f"pull failed: {e}"))
        if isinstance(e, PullError):
            raise
        raise PullError(str(e)) from e
    return report


# --- Command dispatcher ---

USAGE = """\
Usage: vercelenv [OPTIONS]

Options:
  -u, --push           add missing keys
  -d, --pull           sync production
  -c, --clean          remove stale keys
  -l, --list           list remote keys
  -r, --replace        replace existing keys when pushing
  -a, --all            run push, pull and clean
  -b, --branch-preview scope preview env to current branch
  -h, --help           show this help and exit

  --source PATH        local source file (default: .env.local)
  --pull-file PATH     pull destination (default: .env.production.local)
  --config PATH        YAML config file (default: .vercelenv.yml if present)
  --vercel COMMAND     command used to run the Vercel CLI (default: vercel)
  --format FORMAT      text or json (default: text)

Without operation flags, push, pull and clean run in that order.
"""


class _OperationFlag(argparse.Action):
    """
    Fold an operation flag into the shared operation list.

    Flags are processed left to right: regular flags append their operation,
    --all resets the list to exactly push, pull and clean.
    """

    def __init__(self, option_strings, dest, operations=(), reset=False, **kwargs):
        super().__init__(option_strings, dest, nargs=0, **kwargs)
        self.operations = tuple(operations)
        self.reset = reset

    def __call__(self, parser, namespace, values, option_string=None):
        current = [] if self.reset else list(getattr(namespace, self.dest, None) or [])
        for op in self.operations:
            if op not in current:
                current.append(op)
        setattr(namespace, self.dest, current)


class _FlagParser(argparse.ArgumentParser):
    """ArgumentParser that raises UnknownFlagError instead of exiting."""

    def error(self, message):
        raise UnknownFlagError(message)


def build_parser() -> argparse.ArgumentParser:
    ap = _FlagParser(
        prog="vercelenv",
        description="Sync .env.local with Vercel environment variables.",
        usage="vercelenv [OPTIONS]",
        add_help=False,
        allow_abbrev=False,
    )
    ap.set_defaults(operations=[])
    ap.add_argument("-u", "--push", action=_OperationFlag, dest="operations", operations=("push",))
    ap.add_argument("-d", "--pull", action=_OperationFlag, dest="operations", operations=("pull",))
    ap.add_argument("-c", "--clean", action=_OperationFlag, dest="operations", operations=("clean",))
    ap.add_argument("-l", "--list", action=_OperationFlag, dest="operations", operations=("list",))
    ap.add_argument(
        "-a", "--all", action=_OperationFlag, dest="operations", operations=DEFAULT_OPERATIONS, reset=True
    )
    ap.add_argument("-h", "--help", action=_OperationFlag, dest="operations", operations=("help",))
    ap.add_argument("-r", "--replace", action="store_true", default=None)
    ap.add_argument("-b", "--branch-preview", action="store_true", default=None)
    ap.add_argument("--source")
    ap.add_argument("--pull-file")
    ap.add_argument("--config")
    ap.add_argument("--vercel")
    ap.add_argument("--format", default="text", choices=["text", "json"])
    return ap


@dataclass
class Invocation:
    """Parsed command line."""

    operations: List[str]
    help: bool = False
    replace: Optional[bool] = None
    branch_preview: Optional[bool] = None
    source: Optional[str] = None
    pull_file: Optional[str] = None
    config: Optional[str] = None
    vercel: Optional[str] = None
    format: str = "text"


def order_operations(requested: Iterable[str]) -> List[str]:
    """
    Resolve requested operations into execution order.

    Examples:
        >>> order_operations(["clean", "push"])
        ['push', 'clean']
        >>> order_operations([])
        ['push', 'pull', 'clean']
    """
    wanted = set(requested) - {"help"}
    if not wanted:
        wanted = set(DEFAULT_OPERATIONS)
    return [op for op in OPERATION_ORDER if op in wanted]


def parse_invocation(argv: Optional[Sequence[str]] = None) -> Invocation:
    """
    Parse command-line tokens.

    Raises:
        UnknownFlagError: On the first token that is not a recognised flag,
            or a malformed one (bad --format choice, missing PATH, "-ux");
            raised before any operation runs, even when --help is present
    """
    ap = build_parser()
    args, unknown = ap.parse_known_args(argv)
    if unknown:
        raise UnknownFlagError(f"unknown flag {unknown[0]}")
    return Invocation(
        operations=order_operations(args.operations),
        help="help" in args.operations,
        replace=args.replace,
        branch_preview=args.branch_preview,
        source=args.source,
        pull_file=args.pull_file,
        config=args.config,
        vercel=args.vercel,
        format=args.format,
    )


def apply_overrides(settings: Settings, inv: Invocation) -> Settings:
    """Apply command-line values on top of file settings (flags only switch on)."""
    if inv.source:
        settings.source_file = inv.source
    if inv.pull_file:
        settings.pull_file = inv.pull_file
    if inv.vercel:
        settings.vercel = inv.vercel
    if inv.replace:
        settings.replace = True
    if inv.branch_preview:
        settings.branch_preview = True
    return settings


def run_operations(
    inv: Invocation,
    settings: Settings,
    store: RemoteVariableStore,
    reporter: Optional[Reporter] = None,
    branch_resolver: Optional[BranchResolver] = None,
    reports: Optional[Dict[str, SyncReport]] = None,
) -> Dict[str, SyncReport]:
    """
    Run the requested operations in fixed order.

    The source file is read once per push and once per clean. A fatal error
    stops the run; operations that already completed are not rolled back.

    Args:
        inv: Parsed invocation (operations in execution order)
        settings: Effective settings
        store: Remote variable store
        reporter: Receives every event
        branch_resolver: Source of the git branch for branch-scoped preview
        reports: Optional mapping to fill as operations run; each report is
            registered before its operation starts, so callers keep the
            events of a partly finished operation when a fatal error stops it

    Returns:
        Mapping of operation name to its SyncReport
    """
    engine = ReconciliationEngine(store, reporter, branch_resolver)
    if reports is None:
        reports = {}
    for op in inv.operations:
        if op == "push":
            local = load_local_env(settings.source_file)
            report = reports[op] = SyncReport(op)
            engine.push(
                local, branch_scoped=settings.branch_preview, replace=settings.replace, report=report
            )
        elif op == "pull":
            report = reports[op] = SyncReport(op)
            pull_env(store, settings.pull_file, reporter, report=report)
        elif op == "clean":
            local = load_local_env(settings.source_file)
            report = reports[op] = SyncReport(op)
            engine.clean(local, branch_scoped=settings.branch_preview, report=report)
        elif op == "list":
            report = reports[op] = SyncReport(op)
            engine.list_remote(branch_scoped=settings.branch_preview, report=report)
    return reports


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the vercelenv CLI tool.

    Exit codes:
        - 0: Success, including runs where single keys failed
        - 1: Unrecoverable error
        - 2: Unknown flag
    """
    try:
        inv = parse_invocation(argv)
    except UnknownFlagError as e:
        print(f"vercelenv: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr, end="")
        return e.exit_code

    if inv.help:
        print(USAGE, end="")
        return 0

    if inv.format == "json":
        reporter = RecordingReporter()
    else:
        reporter = ConsoleReporter()

    reports: Dict[str, SyncReport] = {}
    try:
        settings = apply_overrides(load_settings(inv.config), inv)
        store = VercelCLI(settings.vercel, cwd=settings.cwd, timeout=settings.timeout)
        resolver = GitBranchResolver(cwd=settings.cwd)
        run_operations(inv, settings, store, reporter, resolver, reports)
    except VercelEnvError as e:
        print(f"vercelenv: ERROR: {e}", file=sys.stderr)
        if inv.format == "json":
            print(json.dumps(_json_result(inv, reports, str(e)), indent=2))
        return e.exit_code

    if inv.format == "json":
        print(json.dumps(_json_result(inv, reports), indent=2))
    return 0


def _json_result(inv: Invocation, reports: Dict[str, SyncReport], error: Optional[str] = None) -> Dict[str, Any]:
    return {
        "operations": inv.operations,
        "reports": {op: r.to_dict() for op, r in reports.items()},
        "error": error,
    }


if __name__ == "__main__":
    sys.exit(main())
