#!/usr/bin/env python3
"""
nixbrew - Homebrew-style front end for Nix profiles
Single-file implementation of the version resolution and local state engine:
- Version descriptors (semantic version, channel, commit hash)
- Channel resolution against nixpkgs with a durable resolution cache
- Registry of installed packages with append-only history
- Rollback to any version previously installed on this machine
- Reproducible flake.nix generation
- install, uninstall, upgrade, pin, rollback, history commands
"""

import argparse
import json
import os
import re
import subprocess
import sys
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import git  # requires GitPython
import yaml  # requires PyYAML
from packaging import version as pkg_version  # requires packaging

# ==================== Configuration ====================
NIXPKGS_REPO = "https://github.com/NixOS/nixpkgs.git"
NIXPKGS_FLAKE = "github:NixOS/nixpkgs"
NIX_FLAGS = ["--extra-experimental-features", "nix-command flakes"]
FLAKE_SYSTEMS = ["aarch64-darwin", "aarch64-linux", "x86_64-darwin", "x86_64-linux"]

DEFAULT_CONFIG: Dict[str, Any] = {
    "default_channel": "nixos-unstable",
    "search_channels": ["nixos-unstable", "nixos-24.05", "nixos-23.11"],
    "tie_break": "recent",
    "cache_ttl": 6 * 3600,
    "lookup_timeout": 60,
    "lookup_retries": 1,
    "retry_backoff": 1.0,
}
TIE_BREAKS = ("recent", "listed")


def default_root() -> str:
    return os.environ.get("NIXBREW_ROOT", os.path.expanduser("~/.nixbrew"))


class Config:
    def __init__(self, root: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.root = root or default_root()
        values = dict(DEFAULT_CONFIG)
        for key, value in (data or {}).items():
            if key not in DEFAULT_CONFIG:
                logger(f"Ignoring unknown config key '{key}'", "WARNING")
                continue
            values[key] = value
        self.default_channel = values["default_channel"]
        self.search_channels = values["search_channels"]
        self.tie_break = values["tie_break"]
        self.cache_ttl = values["cache_ttl"]
        self.lookup_timeout = values["lookup_timeout"]
        self.lookup_retries = values["lookup_retries"]
        self.retry_backoff = values["retry_backoff"]
        self._validate()

    def _validate(self):
        if not isinstance(self.default_channel, str) or not self.default_channel:
            raise ConfigError("default_channel must be a non-empty string")
        if (
            not isinstance(self.search_channels, list)
            or not self.search_channels
            or not all(isinstance(c, str) and c for c in self.search_channels)
        ):
            raise ConfigError("search_channels must be a non-empty list of channel names")
        if self.tie_break not in TIE_BREAKS:
            raise ConfigError(f"tie_break must be one of {', '.join(TIE_BREAKS)}")
        for key in ("cache_ttl", "lookup_timeout", "retry_backoff"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"{key} must be a non-negative number")
        retries = self.lookup_retries
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
            raise ConfigError("lookup_retries must be a non-negative integer")

    @property
    def registry_path(self) -> str:
        return os.path.join(self.root, "registry.json")

    @property
    def cache_path(self) -> str:
        return os.path.join(self.root, "cache.json")

    @property
    def flake_dir(self) -> str:
        return os.path.join(self.root, "flakes")


def load_config(root: Optional[str] = None) -> Config:
    """Load config.yaml from the state root, falling back to defaults."""
    root = root or default_root()
    path = os.path.join(root, "config.yaml")
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping of settings")
    return Config(root, data)


# ==================== Errors ====================
class NixbrewError(Exception):
    """Base class for errors reported to the user."""


class ConfigError(NixbrewError):
    pass


class ResolutionError(NixbrewError):
    def __init__(self, package: str, descriptor: "VersionDescriptor", message: str):
        super().__init__(message)
        self.package = package
        self.descriptor = descriptor


class ChannelNotFound(ResolutionError):
    pass


class VersionNotFound(ResolutionError):
    pass


class LookupFailed(ResolutionError):
    pass


class RollbackError(NixbrewError):
    pass


class VersionNeverInstalled(RollbackError):
    def __init__(self, package: str, version: str):
        super().__init__(f"{package} {version} was never installed on this machine")
        self.package = package
        self.version = version


class RegistryCorrupt(NixbrewError):
    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Registry file {path} is unreadable ({reason}). "
            "Inspect it, or move it aside to start with an empty registry."
        )
        self.path = path


class FlakeWriteFailed(NixbrewError):
    pass


class PackageNotInstalled(NixbrewError):
    def __init__(self, package: str):
        super().__init__(f"Package '{package}' is not installed by nixbrew")
        self.package = package


class PackagePinned(NixbrewError):
    def __init__(self, package: str):
        super().__init__(f"Package '{package}' is pinned; run 'nixbrew unpin {package}' first")
        self.package = package


class NixCommandFailed(NixbrewError):
    pass


class SourceNotFound(NixbrewError):
    """The remote answered, and the channel or package does not exist."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class SourceUnavailable(NixbrewError):
    """The remote could not be reached or did not answer in time."""


# ==================== Utility Functions ====================
def logger(msg, level="INFO"):
    if level == "DEBUG" and not os.environ.get("NIXBREW_DEBUG"):
        return
    stream = sys.stderr if level in ("WARNING", "ERROR") else sys.stdout
    print(f"[{level}] {msg}", file=stream)


def ensure_dir(path):
    os.makedirs(path, exist_ok=True)


def iso_timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values and a trailing Z are read as UTC."""
    if not isinstance(text, str):
        raise TypeError(f"timestamp must be a string, not {type(text).__name__}")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def atomic_write_text(path: str, text: str) -> None:
    """Replace `path` with `text` so readers see either the old or the new file."""
    directory = os.path.dirname(os.path.abspath(path))
    ensure_dir(directory)
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


T = TypeVar("T")


def with_retry(
    func: Callable[[], T],
    retries: int = 1,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `func`, retrying transient SourceUnavailable failures.

    Delay before retry n (1-based) is backoff * 2 ** (n - 1). SourceNotFound
    and every other exception propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return func()
        except SourceUnavailable as e:
            if attempt >= retries:
                raise
            attempt += 1
            delay = backoff * (2 ** (attempt - 1))
            logger(f"Lookup failed ({e}); retrying in {delay:.1f}s", "WARNING")
            sleep(delay)


# ==================== Version Descriptors ====================
SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z][0-9A-Za-z.\-]*))?$")
CHANNEL_RE = re.compile(r"^\d+\.\d+$")
COMMIT_RE = re.compile(r"^[0-9a-fA-F]{6,}$")


@dataclass(frozen=True)
class Unspecified:
    def normalized(self) -> str:
        return "default"

    def __str__(self):
        return "latest"


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None

    @classmethod
    def from_string(cls, text: str) -> Optional["SemanticVersion"]:
        match = SEMVER_RE.match(text.strip())
        if not match:
            return None
        major, minor, patch, prerelease = match.groups()
        return cls(int(major), int(minor), int(patch), prerelease)

    def normalized(self) -> str:
        return f"semver:{self}"

    def __str__(self):
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


@dataclass(frozen=True)
class Channel:
    label: str
    # True when the label did not look like a release number and was kept verbatim
    literal: bool = False

    def normalized(self) -> str:
        return f"channel:{self.label}"

    def __str__(self):
        return self.label


@dataclass(frozen=True)
class CommitRef:
    rev: str

    def normalized(self) -> str:
        return f"commit:{self.rev}"

    def __str__(self):
        return self.rev


VersionDescriptor = Union[Unspecified, SemanticVersion, Channel, CommitRef]


def parse_descriptor(text: Optional[str]) -> VersionDescriptor:
    """Classify a user-supplied version string. Never raises."""
    if text is None or not text.strip():
        return Unspecified()
    text = text.strip()
    semver = SemanticVersion.from_string(text)
    if semver is not None:
        return semver
    if CHANNEL_RE.match(text):
        return Channel(text)
    if COMMIT_RE.match(text):
        return CommitRef(text.lower())
    logger(f"'{text}' is not a version, release or commit; treating it as a channel", "DEBUG")
    return Channel(text, literal=True)


def versions_equal(found: Optional[str], wanted: str) -> bool:
    if found is None:
        return False
    a = SemanticVersion.from_string(found)
    b = SemanticVersion.from_string(wanted)
    if a is not None and b is not None:
        return a == b
    return found.strip() == wanted.strip()


def channel_branch(label: str) -> str:
    """Map a user channel label onto a nixpkgs branch name."""
    if CHANNEL_RE.match(label):
        return f"nixos-{label}"
    if label == "unstable":
        return "nixos-unstable"
    return label


def channel_recency(branch: str) -> Tuple[int, Any]:
    if branch.endswith("unstable"):
        return (2, pkg_version.Version("0"))
    match = re.search(r"(\d+\.\d+)$", branch)
    if match:
        return (1, pkg_version.parse(match.group(1)))
    return (0, pkg_version.Version("0"))


# ==================== Resolved References ====================
@dataclass(frozen=True)
class ResolvedReference:
    package: str
    source: str
    channel: Optional[str] = None
    revision: Optional[str] = None
    version: Optional[str] = None
    resolved_at: str = ""

    @property
    def display_version(self) -> str:
        return self.version or "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "source": self.source,
            "channel": self.channel,
            "revision": self.revision,
            "version": self.version,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedReference":
        return cls(
            package=data["package"],
            source=data["source"],
            channel=data.get("channel"),
            revision=data.get("revision"),
            version=data.get("version"),
            resolved_at=data.get("resolved_at", ""),
        )


def flake_source(package: str, ref: str) -> str:
    return f"{NIXPKGS_FLAKE}/{ref}#{package}"


# ==================== Remote Lookup ====================
MISSING_ATTR_RE = re.compile(
    r"does not provide attribute|attribute '[^']*' missing|cannot find flake attribute"
)


class SourceLookup(ABC):
    """Questions the resolver asks about upstream nixpkgs."""

    @abstractmethod
    def channel_revision(self, branch: str) -> str:
        """Return the commit a channel branch currently points at."""
        ...

    @abstractmethod
    def package_version(self, package: str, revision: str) -> str:
        """Return the version of `package` at `revision`."""
        ...


class NixpkgsLookup(SourceLookup):
    def __init__(self, timeout: float = 60, repo_url: str = NIXPKGS_REPO):
        self.timeout = timeout
        self.repo_url = repo_url
        self.git = git.cmd.Git()

    def channel_revision(self, branch):
        try:
            output = self.git.ls_remote(
                self.repo_url, f"refs/heads/{branch}", kill_after_timeout=self.timeout
            )
        except git.exc.CommandError as e:
            raise SourceUnavailable(f"git ls-remote {self.repo_url} failed: {e}") from e
        if not output.strip():
            raise SourceNotFound("channel", branch)
        return output.split()[0]

    def package_version(self, package, revision):
        cmd = ["eval", "--json", f"{flake_source(package, revision)}.version"]
        try:
            result = run_nix(cmd, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise SourceUnavailable(f"nix eval timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise SourceUnavailable("nix executable not found") from e
        if result.returncode != 0:
            if MISSING_ATTR_RE.search(result.stderr):
                raise SourceNotFound("package", package)
            raise SourceUnavailable(
                result.stderr.strip() or f"nix eval exited with {result.returncode}"
            )
        try:
            value = json.loads(result.stdout)
        except ValueError as e:
            raise SourceUnavailable(f"nix eval printed invalid JSON: {e}") from e
        if not isinstance(value, str):
            raise SourceNotFound("package", package)
        return value


# ==================== Resolution Cache ====================
CacheKey = Tuple[str, str]


class ResolutionCache:
    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock

    @staticmethod
    def key(package: str, descriptor: VersionDescriptor) -> CacheKey:
        return (package, descriptor.normalized())

    @staticmethod
    def _file_key(key: CacheKey) -> str:
        return f"{key[0]}@{key[1]}"

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger(f"Ignoring unreadable resolution cache {self.path}: {e}", "WARNING")
            return {}
        return data if isinstance(data, dict) else {}

    def _expired(self, entry: Dict[str, Any], now: float) -> bool:
        return now - float(entry["fetched_at"]) >= float(entry["ttl"])

    def get(self, key: CacheKey) -> Optional[ResolvedReference]:
        entry = self._load().get(self._file_key(key))
        if not isinstance(entry, dict):
            return None
        try:
            if self._expired(entry, self.clock()):
                return None
            return ResolvedReference.from_dict(entry["reference"])
        except (KeyError, TypeError, ValueError):
            return None

    def put(self, key: CacheKey, value: ResolvedReference, ttl: float) -> None:
        now = self.clock()
        entries = {}
        for name, entry in self._load().items():
            try:
                if not self._expired(entry, now):
                    entries[name] = entry
            except (KeyError, TypeError, ValueError):
                continue
        entries[self._file_key(key)] = {
            "package": key[0],
            "descriptor": key[1],
            "reference": value.to_dict(),
            "fetched_at": now,
            "ttl": ttl,
        }
        atomic_write_json(self.path, entries)

    def clear(self) -> int:
        """Delete every entry; returns how many were dropped."""
        count = len(self._load())
        if os.path.exists(self.path):
            os.remove(self.path)
        return count


# ==================== Channel Resolver ====================
class ChannelResolver:
    def __init__(
        self,
        lookup: SourceLookup,
        cache: ResolutionCache,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.lookup = lookup
        self.cache = cache
        self.config = config
        self.sleep = sleep
        self.clock = clock

    def search_order(self) -> List[str]:
        channels = [channel_branch(c) for c in self.config.search_channels]
        if self.config.tie_break == "recent":
            channels = sorted(channels, key=channel_recency, reverse=True)
        return channels

    def resolve(
        self, package: str, descriptor: VersionDescriptor, refresh: bool = False
    ) -> ResolvedReference:
        key = ResolutionCache.key(package, descriptor)
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logger(f"Using cached resolution for {package} ({descriptor})", "DEBUG")
                return cached
        reference = self._resolve_remote(package, descriptor)
        self.cache.put(key, reference, self.config.cache_ttl)
        return reference

    def _retrying(self, func: Callable[[], T]) -> T:
        return with_retry(
            func,
            retries=self.config.lookup_retries,
            backoff=self.config.retry_backoff,
            sleep=self.sleep,
        )

    def _reference(self, package, source, channel=None, revision=None, version=None):
        return ResolvedReference(
            package=package,
            source=source,
            channel=channel,
            revision=revision,
            version=version,
            resolved_at=iso_timestamp(self.clock()),
        )

    def _resolve_remote(self, package, descriptor):
        try:
            if isinstance(descriptor, Unspecified):
                return self._resolve_channel(
                    package, channel_branch(self.config.default_channel), descriptor
                )
            if isinstance(descriptor, Channel):
                return self._resolve_channel(package, channel_branch(descriptor.label), descriptor)
            if isinstance(descriptor, CommitRef):
                return self._resolve_commit(package, descriptor)
            if isinstance(descriptor, SemanticVersion):
                return self._resolve_semantic(package, descriptor)
        except SourceUnavailable as e:
            raise LookupFailed(
                package, descriptor, f"Could not resolve {package} ({descriptor}): {e}"
            ) from e
        raise TypeError(f"Unsupported version descriptor: {descriptor!r}")

    def _resolve_channel(self, package, branch, descriptor):
        try:
            revision = self._retrying(lambda: self.lookup.channel_revision(branch))
        except SourceNotFound as e:
            raise ChannelNotFound(
                package, descriptor, f"Channel '{branch}' does not exist in nixpkgs"
            ) from e
        try:
            found = self._retrying(lambda: self.lookup.package_version(package, revision))
        except SourceNotFound as e:
            raise VersionNotFound(
                package, descriptor, f"Channel '{branch}' does not provide {package}"
            ) from e
        logger(f"Resolved {package} ({descriptor}) to {found} on {branch}", "DEBUG")
        return self._reference(
            package, flake_source(package, revision), branch, revision, found
        )

    def _resolve_commit(self, package, descriptor):
        found = None
        try:
            found = self.lookup.package_version(package, descriptor.rev)
        except (SourceNotFound, SourceUnavailable) as e:
            logger(f"Version of {package} at {descriptor.rev} is unknown: {e}", "WARNING")
        return self._reference(
            package, flake_source(package, descriptor.rev), None, descriptor.rev, found
        )

    def _resolve_semantic(self, package, descriptor):
        channels = self.search_order()
        wanted = str(descriptor)
        for branch in channels:
            try:
                revision = self._retrying(lambda b=branch: self.lookup.channel_revision(b))
            except SourceNotFound:
                logger(f"Skipping channel '{branch}': not found upstream", "WARNING")
                continue
            try:
                found = self._retrying(lambda r=revision: self.lookup.package_version(package, r))
            except SourceNotFound:
                continue
            if versions_equal(found, wanted):
                return self._reference(
                    package, flake_source(package, revision), branch, revision, found
                )
        raise VersionNotFound(
            package,
            descriptor,
            f"No channel in {', '.join(channels)} provides {package} {wanted}",
        )


# ==================== Registry ====================
ACTIONS = ("install", "upgrade", "pin", "rollback")


@dataclass(frozen=True)
class HistoryEntry:
    reference: ResolvedReference
    action: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference.to_dict(),
            "action": self.action,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        if data["action"] not in ACTIONS:
            raise ValueError(f"unknown history action {data['action']!r}")
        parse_timestamp(data["timestamp"])
        return cls(
            reference=ResolvedReference.from_dict(data["reference"]),
            action=data["action"],
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class RegistryRecord:
    package: str
    current: ResolvedReference
    pinned: bool = False
    history: Tuple[HistoryEntry, ...] = ()

    def appended(self, entry: HistoryEntry, pinned: bool) -> "RegistryRecord":
        return RegistryRecord(self.package, entry.reference, pinned, self.history + (entry,))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "current": self.current.to_dict(),
            "pinned": self.pinned,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "RegistryRecord":
        history = tuple(HistoryEntry.from_dict(e) for e in data.get("history", []))
        if "current" in data:
            current = ResolvedReference.from_dict(data["current"])
        else:
            current = history[-1].reference
        return cls(
            package=data.get("package", name),
            current=current,
            pinned=bool(data.get("pinned", False)),
            history=history,
        )


class RegistryStore:
    """Installed packages and their history, persisted as one JSON document."""

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock

    def _load(self) -> Dict[str, RegistryRecord]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RegistryCorrupt(self.path, str(e)) from e
        if not isinstance(data, dict):
            raise RegistryCorrupt(self.path, "top level is not a mapping")
        try:
            return {name: RegistryRecord.from_dict(name, rec) for name, rec in data.items()}
        except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
            raise RegistryCorrupt(self.path, f"malformed record: {e!r}") from e

    def _save(self, records: Dict[str, RegistryRecord]) -> None:
        atomic_write_json(self.path, {name: rec.to_dict() for name, rec in records.items()})

    def _timestamp(self, record: Optional[RegistryRecord]) -> str:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        if record and record.history:
            now = max(now, parse_timestamp(record.history[-1].timestamp))
        return now.isoformat(timespec="microseconds")

    def get(self, package: str) -> Optional[RegistryRecord]:
        return self._load().get(package)

    def all(self) -> List[RegistryRecord]:
        records = self._load()
        return [records[name] for name in sorted(records)]

    def upsert(self, package: str, reference: ResolvedReference, action: str) -> RegistryRecord:
        if action not in ACTIONS:
            raise ValueError(f"Unknown history action: {action}")
        records = self._load()
        record = records.get(package)
        entry = HistoryEntry(reference, action, self._timestamp(record))
        if record is None:
            record = RegistryRecord(package, reference, action == "pin", (entry,))
        else:
            record = record.appended(entry, pinned=record.pinned or action == "pin")
        records[package] = record
        self._save(records)
        return record

    def set_pinned(self, package: str, pinned: bool) -> RegistryRecord:
        records = self._load()
        record = records.get(package)
        if record is None:
            raise PackageNotInstalled(package)
        record = RegistryRecord(record.package, record.current, pinned, record.history)
        records[package] = record
        self._save(records)
        return record

    def remove(self, package: str) -> bool:
        records = self._load()
        if package not in records:
            return False
        del records[package]
        self._save(records)
        return True


# ==================== History ====================
class HistoryManager:
    def __init__(self, registry: RegistryStore):
        self.registry = registry

    def history(self, package: str) -> List[HistoryEntry]:
        record = self.registry.get(package)
        return list(record.history) if record else []

    def find_target(self, package: str, target_version: str) -> ResolvedReference:
        """Newest history entry of `package` whose version is `target_version`."""
        for entry in reversed(self.history(package)):
            if versions_equal(entry.reference.version, target_version):
                return entry.reference
        raise VersionNeverInstalled(package, target_version)

    def rollback(
        self,
        package: str,
        target_version: str,
        reinstall: Optional[Callable[[ResolvedReference], None]] = None,
    ) -> ResolvedReference:
        target = self.find_target(package, target_version)
        if reinstall is not None:
            reinstall(target)
        self.registry.upsert(package, target, "rollback")
        return target


# ==================== Flake Generator ====================
FLAKE_TEMPLATE = """{{
  description = "nixbrew flake for {package} {version}";

  inputs = {{
    nixpkgs.url = "{nixpkgs_url}";
  }};

  outputs = {{ self, nixpkgs }}:
    let
      systems = [ {systems} ];
      forAllSystems = nixpkgs.lib.genAttrs systems;
    in {{
      packages = forAllSystems (system: {{
        default = nixpkgs.legacyPackages.${{system}}.{attr};
      }});
    }};
}}
"""
NIX_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_'\-]*$")


def _nix_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")


def _nix_attr_path(package: str) -> str:
    parts = []
    for part in package.split("."):
        parts.append(part if NIX_IDENT_RE.match(part) else f'"{_nix_string(part)}"')
    return ".".join(parts)


def render_flake(package: str, reference: ResolvedReference) -> str:
    pinned_ref = reference.revision or reference.channel or "nixos-unstable"
    return FLAKE_TEMPLATE.format(
        package=_nix_string(package),
        version=_nix_string(reference.display_version),
        nixpkgs_url=_nix_string(f"{NIXPKGS_FLAKE}/{pinned_ref}"),
        systems=" ".join(f'"{s}"' for s in FLAKE_SYSTEMS),
        attr=_nix_attr_path(package),
    )


def write_flake(flake_dir: str, package: str, reference: ResolvedReference) -> str:
    """Render and write <flake_dir>/<package>/flake.nix; returns its path."""
    path = os.path.join(flake_dir, package, "flake.nix")
    try:
        atomic_write_text(path, render_flake(package, reference))
    except OSError as e:
        raise FlakeWriteFailed(f"Could not write flake for {package} to {path}: {e}") from e
    return path


# ==================== Nix Profile ====================
def run_nix(args, check=False, capture_output=False, timeout=None):
    """Run `nix` with flakes enabled and return the CompletedProcess."""
    cmd = ["nix"] + NIX_FLAGS + list(args)
    logger(f"Running {' '.join(cmd)}", "DEBUG")
    result = subprocess.run(cmd, capture_output=capture_output, text=True, timeout=timeout)
    if check and result.returncode != 0:
        raise NixCommandFailed(f"'nix {' '.join(args)}' failed with exit code {result.returncode}")
    return result


class NixProfile:
    """The user's `nix profile`; output is passed through, only exit codes matter."""

    def _run(self, args):
        try:
            run_nix(args, check=True)
        except FileNotFoundError as e:
            raise NixCommandFailed("nix executable not found on PATH") from e

    def install(self, reference: ResolvedReference) -> None:
        self._run(["profile", "install", reference.source])

    def remove(self, package: str) -> None:
        self._run(["profile", "remove", package])

    def search(self, query: str) -> None:
        self._run(["search", "nixpkgs", query])

    def lock_flake(self, flake_dir: str) -> None:
        self._run(["flake", "lock", flake_dir])


# ==================== Commands ====================
class Nixbrew:
    def __init__(
        self,
        config: Config,
        lookup: Optional[SourceLookup] = None,
        profile: Optional[NixProfile] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.registry = RegistryStore(config.registry_path, clock=clock)
        self.cache = ResolutionCache(config.cache_path, clock=clock)
        self.lookup = lookup or NixpkgsLookup(timeout=config.lookup_timeout)
        self.resolver = ChannelResolver(self.lookup, self.cache, config, sleep=sleep, clock=clock)
        self.history_mgr = HistoryManager(self.registry)
        self.profile = profile or NixProfile()

    def _require(self, package: str) -> RegistryRecord:
        record = self.registry.get(package)
        if record is None:
            raise PackageNotInstalled(package)
        return record

    def _switch(self, package: str, reference: ResolvedReference) -> None:
        """Replace the profile entry of `package`, restoring the old one if the install fails."""
        record = self.registry.get(package)
        if record is None:
            self.profile.install(reference)
            return
        self.profile.remove(package)
        try:
            self.profile.install(reference)
        except NixCommandFailed:
            logger(f"Install failed; restoring {package} {record.current.display_version}", "ERROR")
            try:
                self.profile.install(record.current)
            except NixCommandFailed as restore_error:
                logger(f"Could not restore {package}: {restore_error}", "ERROR")
            raise

    def install(self, package: str, version: Optional[str] = None) -> ResolvedReference:
        descriptor = parse_descriptor(version)
        reference = self.resolver.resolve(package, descriptor)
        logger(f"Installing {package} {reference.display_version} from {reference.source}")
        self._switch(package, reference)
        self.registry.upsert(package, reference, "install")
        return reference

    def uninstall(self, package: str) -> None:
        self._require(package)
        logger(f"Uninstalling {package}")
        self.profile.remove(package)
        self.registry.remove(package)

    def upgrade(self, packages: List[str]) -> List[ResolvedReference]:
        if packages:
            for name in packages:
                if self._require(name).pinned:
                    raise PackagePinned(name)
        else:
            records = self.registry.all()
            for record in records:
                if record.pinned:
                    logger(f"Skipping pinned package {record.package}")
            packages = [r.package for r in records if not r.pinned]

        upgraded = []
        for name in packages:
            current = self._require(name).current
            reference = self.resolver.resolve(name, Unspecified(), refresh=True)
            if reference.source == current.source:
                logger(f"{name} is already up to date ({current.display_version})")
                continue
            logger(f"Upgrading {name} {current.display_version} -> {reference.display_version}")
            self._switch(name, reference)
            self.registry.upsert(name, reference, "upgrade")
            upgraded.append(reference)
        return upgraded

    def pin(self, package: str, version: Optional[str] = None) -> ResolvedReference:
        if version is None:
            reference = self._require(package).current
        else:
            reference = self.resolver.resolve(package, parse_descriptor(version))
            self._switch(package, reference)
        self.registry.upsert(package, reference, "pin")
        logger(f"Pinned {package} at {reference.display_version}")
        return reference

    def unpin(self, package: str) -> None:
        self.registry.set_pinned(package, False)
        logger(f"Unpinned {package}")

    def rollback(self, package: str, version: str) -> ResolvedReference:
        self._require(package)

        def reinstall(reference):
            logger(f"Rolling back {package} to {reference.display_version}")
            self._switch(package, reference)

        return self.history_mgr.rollback(package, version, reinstall=reinstall)

    def history(self, package: str) -> List[HistoryEntry]:
        return self.history_mgr.history(package)

    def versions(self, package: str) -> List[Tuple[str, Optional[str]]]:
        """Version of `package` offered by each search channel.

        None means the channel does not offer it, "?" that the lookup failed.
        """
        offered = []
        for branch in self.resolver.search_order():
            try:
                reference = self.resolver.resolve(package, Channel(branch, literal=True))
                offered.append((branch, reference.version))
            except (ChannelNotFound, VersionNotFound):
                offered.append((branch, None))
            except LookupFailed as e:
                logger(str(e), "WARNING")
                offered.append((branch, "?"))
        return offered

    def create_flake(self, package: str, version: Optional[str] = None, lock: bool = True) -> str:
        reference = self.resolver.resolve(package, parse_descriptor(version))
        path = write_flake(self.config.flake_dir, package, reference)
        logger(f"Created flake at: {path}")
        if lock:
            self.profile.lock_flake(os.path.dirname(path))
        return path

    def update(self) -> int:
        dropped = self.cache.clear()
        logger(f"Cleared {dropped} cached resolution(s)")
        return dropped


# ==================== CLI ====================
def build_parser():
    parser = argparse.ArgumentParser(
        prog="nixbrew", description="nixbrew - a Homebrew-like CLI for Nix profiles"
    )
    parser.add_argument("--root", help="State directory (env: NIXBREW_ROOT, default ~/.nixbrew)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", help="Install a package")
    install.add_argument("package")
    install.add_argument(
        "version", nargs="?", help="Version (14.1.0), channel (23.11) or commit hash"
    )

    uninstall = subparsers.add_parser("uninstall", help="Remove a package and its history")
    uninstall.add_argument("package")

    upgrade = subparsers.add_parser("upgrade", help="Upgrade packages (all unpinned if none given)")
    upgrade.add_argument("packages", nargs="*")

    pin = subparsers.add_parser("pin", help="Pin a package, optionally to a specific version")
    pin.add_argument("package")
    pin.add_argument("version", nargs="?")

    unpin = subparsers.add_parser("unpin", help="Allow a pinned package to be upgraded again")
    unpin.add_argument("package")

    rollback = subparsers.add_parser("rollback", help="Reinstall a previously installed version")
    rollback.add_argument("package")
    rollback.add_argument("version")

    history = subparsers.add_parser("history", help="Show the install history of a package")
    history.add_argument("package")

    versions = subparsers.add_parser("versions", help="Show versions offered by each channel")
    versions.add_argument("package")

    subparsers.add_parser("list", help="List packages installed by nixbrew")

    search = subparsers.add_parser("search", help="Search nixpkgs")
    search.add_argument("query")

    subparsers.add_parser("update", help="Forget cached version resolutions")

    create_flake = subparsers.add_parser("create-flake", help="Write a flake.nix for a package")
    create_flake.add_argument("package")
    create_flake.add_argument("version", nargs="?")
    create_flake.add_argument(
        "--no-lock", dest="lock", action="store_false", help="Skip 'nix flake lock'"
    )
    return parser


def run_command(args, app: Nixbrew) -> None:
    if args.command == "install":
        reference = app.install(args.package, args.version)
        print(f"Installed {args.package} {reference.display_version}")
    elif args.command == "uninstall":
        app.uninstall(args.package)
        print(f"Uninstalled {args.package}")
    elif args.command == "upgrade":
        upgraded = app.upgrade(args.packages)
        if not upgraded:
            print("Nothing to upgrade.")
        for reference in upgraded:
            print(f"Upgraded {reference.package} to {reference.display_version}")
    elif args.command == "pin":
        reference = app.pin(args.package, args.version)
        print(f"Pinned {args.package} at {reference.display_version}")
    elif args.command == "unpin":
        app.unpin(args.package)
    elif args.command == "rollback":
        reference = app.rollback(args.package, args.version)
        print(f"Rolled back {args.package} to {reference.display_version}")
    elif args.command == "history":
        entries = app.history(args.package)
        if not entries:
            print(f"No history recorded for {args.package}.")
            print(f"Run 'nixbrew versions {args.package}' to see available versions.")
            return
        print(f"History for {args.package}:")
        for i, entry in enumerate(entries, 1):
            ref = entry.reference
            print(f"  {i}. {entry.action:<8} {ref.display_version} ({entry.timestamp})")
            print(f"     Source: {ref.source}")
    elif args.command == "versions":
        for branch, found in app.versions(args.package):
            print(f"  {branch}: {found or '-'}")
    elif args.command == "list":
        records = app.registry.all()
        if not records:
            print("No packages installed.")
            return
        for record in records:
            pin_mark = " [pinned]" if record.pinned else ""
            channel = record.current.channel or record.current.revision
            print(f"  {record.package} {record.current.display_version} ({channel}){pin_mark}")
    elif args.command == "search":
        app.profile.search(args.query)
    elif args.command == "update":
        app.update()
    elif args.command == "create-flake":
        app.create_flake(args.package, args.version, lock=args.lock)


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        app = Nixbrew(load_config(args.root))
        run_command(args, app)
    except NixbrewError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
