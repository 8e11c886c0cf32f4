import sys
from pathlib import Path

import pytest

# Ensure repository root is importable when running pytest from subdirs/other CWDs
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import vercelenv  # noqa: E402


class FakeStore:
    """In-memory RemoteVariableStore that records every call."""

    def __init__(self, initial=None):
        # scope tuple -> {key: value}
        self.vars = {tuple(s): dict(kv) for s, kv in (initial or {}).items()}
        self.calls = []
        self.fail_add = set()
        self.fail_remove = set()
        self.fail_list = set()
        self.fail_pull = False
        self.listing_extra = {}

    def keys(self, *scope):
        return set(self.vars.get(tuple(scope), {}))

    def list_keys(self, scope):
        self.calls.append(("list", scope))
        if scope in self.fail_list:
            raise vercelenv.RemoteOperationError("listing unavailable")
        return list(self.vars.get(scope, {})) + list(self.listing_extra.get(scope, []))

    def add(self, key, value, scope):
        self.calls.append(("add", key, value, scope))
        if key in self.fail_add:
            raise vercelenv.RemoteOperationError("quota exceeded")
        self.vars.setdefault(scope, {})[key] = value

    def remove(self, key, scope):
        self.calls.append(("remove", key, scope))
        if key in self.fail_remove:
            raise vercelenv.RemoteOperationError("forbidden")
        bucket = self.vars.get(scope, {})
        if key not in bucket:
            raise vercelenv.RemoteKeyNotFoundError(f"Environment Variable {key} was not found")
        del bucket[key]

    def pull(self, path, target="production"):
        self.calls.append(("pull", path, target))
        if self.fail_pull:
            raise vercelenv.PullError("not authorized")
        lines = [f'{k}="{v}"' for k, v in self.vars.get((target,), {}).items()]
        Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")

    def mutations(self):
        return [c for c in self.calls if c[0] in ("add", "remove")]


class FixedBranch:
    def __init__(self, branch="feature-x"):
        self.branch = branch
        self.lookups = 0

    def current_branch(self):
        self.lookups += 1
        return self.branch


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def recorder():
    return vercelenv.RecordingReporter()


@pytest.fixture
def env_file(tmp_path: Path):
    def _write(text: str) -> Path:
        path = tmp_path / ".env.local"
        path.write_bytes(text.encode("utf-8"))
        return path

    return _write
