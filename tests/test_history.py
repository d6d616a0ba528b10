"""Tests for HistoryManager rollback."""

import pytest

import nixbrew  # noqa: E402
from conftest import FakeClock


def _ref(version, rev):
    return nixbrew.ResolvedReference(
        package="ripgrep",
        source=f"github:NixOS/nixpkgs/{rev}#ripgrep",
        revision=rev,
        version=version,
    )


REF_A = _ref("13.0.0", "a" * 40)
REF_B = _ref("14.0.3", "b" * 40)
REF_C = _ref("14.1.0", "c" * 40)


@pytest.fixture
def manager(tmp_path):
    store = nixbrew.RegistryStore(str(tmp_path / "registry.json"), clock=FakeClock())
    store.upsert("ripgrep", REF_A, "install")
    store.upsert("ripgrep", REF_B, "upgrade")
    store.upsert("ripgrep", REF_C, "upgrade")
    return nixbrew.HistoryManager(store)


def test_history_oldest_first(manager):
    assert [e.reference for e in manager.history("ripgrep")] == [REF_A, REF_B, REF_C]


def test_history_of_unknown_package_is_empty(manager):
    assert manager.history("bat") == []


def test_rollback_appends_entry(manager):
    target = manager.rollback("ripgrep", "13.0.0")
    assert target == REF_A
    history = manager.history("ripgrep")
    assert len(history) == 4
    assert history[-1].reference == REF_A
    assert history[-1].action == "rollback"
    assert manager.registry.get("ripgrep").current == REF_A
    assert [e.reference for e in history[:3]] == [REF_A, REF_B, REF_C]


def test_rollback_never_installed(manager):
    with pytest.raises(nixbrew.VersionNeverInstalled) as excinfo:
        manager.rollback("ripgrep", "9.0.0")
    assert excinfo.value.version == "9.0.0"
    assert len(manager.history("ripgrep")) == 3


def test_rollback_unknown_package(manager):
    with pytest.raises(nixbrew.VersionNeverInstalled):
        manager.rollback("bat", "0.24.0")


def test_rollback_picks_newest_matching_entry(tmp_path):
    store = nixbrew.RegistryStore(str(tmp_path / "registry.json"), clock=FakeClock())
    older = _ref("14.0.3", "1" * 40)
    newer = _ref("14.0.3", "2" * 40)
    store.upsert("ripgrep", older, "install")
    store.upsert("ripgrep", newer, "install")
    store.upsert("ripgrep", REF_C, "upgrade")
    assert nixbrew.HistoryManager(store).find_target("ripgrep", "14.0.3") == newer


def test_reinstall_runs_before_commit(manager):
    seen = []

    def reinstall(reference):
        seen.append((reference, len(manager.history("ripgrep"))))

    manager.rollback("ripgrep", "14.0.3", reinstall=reinstall)
    assert seen == [(REF_B, 3)]


def test_failed_reinstall_commits_nothing(manager):
    def reinstall(reference):
        raise nixbrew.NixCommandFailed("nix profile install failed")

    with pytest.raises(nixbrew.NixCommandFailed):
        manager.rollback("ripgrep", "14.0.3", reinstall=reinstall)
    assert len(manager.history("ripgrep")) == 3
    assert manager.registry.get("ripgrep").current == REF_C
