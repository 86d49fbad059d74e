from __future__ import annotations

import sys
from pathlib import Path

import pytest

from respx import MockRouter


ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from authz_kernel.workspace import InMemoryWorkspaceStore  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for cache expiry tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspace_store() -> InMemoryWorkspaceStore:
    """alice owns p1; bob edits it, carol views it; f1 > f2 hold doc1."""
    store = InMemoryWorkspaceStore()
    for user in ("alice", "bob", "carol", "mallory"):
        store.add_user(user)
    store.add_user("root", role="admin")
    store.add_project("p1", owner_id="alice")
    store.add_member("p1", "bob", "editor")
    store.add_member("p1", "carol", "viewer")
    store.add_folder("f1", project_id="p1")
    store.add_folder("f2", parent_id="f1")
    store.add_file("doc1", folder_id="f2")
    return store


@pytest.fixture
def respx_mock() -> MockRouter:
    with MockRouter() as router:
        yield router
