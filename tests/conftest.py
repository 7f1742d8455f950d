"""Shared fixtures for fleet-gitrepo tests."""

from collections.abc import Generator
import datetime
from pathlib import Path
import tempfile

import git
import pytest

from fleet_gitrepo.exceptions import RemoteResolutionError
from fleet_gitrepo.source import CommitResolver
from fleet_gitrepo.store import InMemoryStore

NOW = datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


class FakeResolver(CommitResolver):
    """Resolver returning commits from a table of (url, branch)."""

    def __init__(self) -> None:
        self.commits: dict[tuple[str, str], str] = {}
        self.calls: list[tuple[str, str]] = []

    async def resolve(self, repo_url: str, branch: str) -> str:
        self.calls.append((repo_url, branch))
        if (commit := self.commits.get((repo_url, branch))) is None:
            raise RemoteResolutionError(repo_url, branch, "repository not found")
        return commit


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    """Fixture for a controllable clock."""
    return FakeClock()


@pytest.fixture(name="store")
def store_fixture(clock: FakeClock) -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore(clock=clock)


@pytest.fixture(name="resolver")
def resolver_fixture() -> FakeResolver:
    """Create a resolver with no known repositories."""
    return FakeResolver()


@pytest.fixture(name="git_repo_tmp_dir")
def git_repo_tmp_dir_fixture() -> Generator[Path, None, None]:
    """Create a temporary directory for test repositories."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture(name="git_repo")
def git_repo_fixture(git_repo_tmp_dir: Path) -> git.Repo:
    """Create a local git repository with a `main` branch."""
    repo_path = git_repo_tmp_dir / "test-repo"
    repo_path.mkdir()

    repo = git.Repo.init(repo_path)
    repo.config_writer().set_value("user", "name", "myusername").release()
    repo.config_writer().set_value("user", "email", "myemail").release()

    app_dir = repo_path / "app"
    app_dir.mkdir()
    (app_dir / "deployment.yaml").write_text("kind: ConfigMap\n")

    repo.git.add(".")
    repo.git.commit(m="Initial commit")
    repo.git.branch("-M", "main")
    return repo
