"""Pytest configuration: use a temporary NIXBREW_ROOT so tests don't touch real data."""

import os
import shutil
import tempfile

import pytest

_NIXBREW_TEST_ROOT = tempfile.mkdtemp(prefix="nixbrew_test_")
os.environ["NIXBREW_ROOT"] = _NIXBREW_TEST_ROOT

import nixbrew  # noqa: E402

UNSTABLE_REV = "a" * 40
STABLE_REV = "b" * 40
OLD_REV = "c" * 40


@pytest.fixture(scope="session", autouse=True)
def _cleanup_nixbrew_root():
    """Remove test NIXBREW_ROOT and env var after all tests."""
    yield
    os.environ.pop("NIXBREW_ROOT", None)
    shutil.rmtree(_NIXBREW_TEST_ROOT, ignore_errors=True)


class FakeLookup(nixbrew.SourceLookup):
    """In-memory nixpkgs: branch -> (revision, {package: version})."""

    def __init__(self, channels=None, commits=None):
        self.channels = channels or {}
        self.commits = commits or {}
        self.calls = []
        self.failures = 0

    def _maybe_fail(self):
        if self.failures > 0:
            self.failures -= 1
            raise nixbrew.SourceUnavailable("network unreachable")

    def channel_revision(self, branch):
        self.calls.append(("channel_revision", branch))
        self._maybe_fail()
        if branch not in self.channels:
            raise nixbrew.SourceNotFound("channel", branch)
        return self.channels[branch][0]

    def package_version(self, package, revision):
        self.calls.append(("package_version", package, revision))
        self._maybe_fail()
        packages = self.commits.get(revision)
        if packages is None:
            for rev, pkgs in self.channels.values():
                if rev == revision:
                    packages = pkgs
        if not packages or package not in packages:
            raise nixbrew.SourceNotFound("package", package)
        return packages[package]


class FakeProfile(nixbrew.NixProfile):
    """Records nix profile operations instead of running nix."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.broken_sources = set()

    def _run(self, args):
        self.calls.append(tuple(args))
        broken = args[:2] == ["profile", "install"] and args[2] in self.broken_sources
        if self.fail or broken:
            raise nixbrew.NixCommandFailed(f"'nix {' '.join(args)}' failed with exit code 1")


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def lookup():
    return FakeLookup(
        {
            "nixos-unstable": (UNSTABLE_REV, {"ripgrep": "14.1.0", "hello": "2.12.1"}),
            "nixos-23.11": (STABLE_REV, {"ripgrep": "14.0.3", "hello": "2.12.1"}),
        },
        commits={OLD_REV: {"ripgrep": "13.0.0"}},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return nixbrew.Config(
        str(tmp_path),
        {
            "default_channel": "nixos-unstable",
            "search_channels": ["nixos-23.11", "nixos-unstable"],
            "retry_backoff": 0,
        },
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def resolver(lookup, config, clock, sleeps):
    cache = nixbrew.ResolutionCache(config.cache_path, clock=clock)
    return nixbrew.ChannelResolver(lookup, cache, config, sleep=sleeps.append, clock=clock)


@pytest.fixture
def profile():
    return FakeProfile()


@pytest.fixture
def app(config, lookup, profile, clock, sleeps):
    return nixbrew.Nixbrew(config, lookup=lookup, profile=profile, sleep=sleeps.append, clock=clock)
