"""Planned output files, the manifest of a generated wiki, and guarded writes."""

from __future__ import annotations

import errno
import json
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath, PurePosixPath
from typing import Iterable, Mapping, Optional

from mdwiki.paths import markdown_path

MANIFEST_SCHEMA_VERSION = 1
MANIFEST_PATH = ".md-wiki/manifest.json"
TOOL_VERSION = "0.1.3"

# An output plan maps output-relative paths (PurePosixPath) to file bytes.
OutputPlan = dict


class OutputError(Exception):
    """Raised when generated output cannot be read, validated or written."""


class ManifestInputKind(str, Enum):
    """Whether the wiki was generated from a single file or a directory."""

    FILE = "file"
    DIRECTORY = "directory"


def _rel(path) -> PurePosixPath:
    if isinstance(path, PurePath):
        return PurePosixPath(path.as_posix())
    return PurePosixPath(os.fspath(path))


def _path_text(path) -> str:
    if isinstance(path, PurePath):
        return path.as_posix()
    return os.fspath(path)


def _expect(value, kind, name):
    if kind is int and isinstance(value, bool):
        raise OutputError(f"invalid manifest field `{name}`")
    if not isinstance(value, kind):
        raise OutputError(f"invalid manifest field `{name}`")
    return value


def _string_map(value, name) -> dict:
    _expect(value, dict, name)
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            raise OutputError(f"invalid manifest field `{name}`")
    return dict(sorted(value.items()))


@dataclass
class Manifest:
    """Record of the inputs and generated files of one wiki build."""

    schema_version: int
    tool_version: str
    input_kind: ManifestInputKind
    input_root: str
    input_path: str
    recursive: bool
    source_hashes: dict = field(default_factory=dict)
    generated_file_hashes: dict = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        input_kind,
        input_root,
        input_path,
        recursive: bool,
        source_hashes: Mapping,
        plan: Mapping,
    ) -> "Manifest":
        """Build a manifest for the current tool version from a finished plan."""
        return cls(
            schema_version=MANIFEST_SCHEMA_VERSION,
            tool_version=TOOL_VERSION,
            input_kind=ManifestInputKind(input_kind),
            input_root=markdown_path(input_root),
            input_path=markdown_path(input_path),
            recursive=recursive,
            source_hashes=dict(sorted(source_hashes.items())),
            generated_file_hashes=plan_hashes(plan),
        )

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "tool_version": self.tool_version,
            "input_kind": ManifestInputKind(self.input_kind).value,
            "input_root": self.input_root,
            "input_path": self.input_path,
            "recursive": self.recursive,
            "source_hashes": dict(sorted(self.source_hashes.items())),
            "generated_file_hashes": dict(sorted(self.generated_file_hashes.items())),
        }

    @classmethod
    def from_dict(cls, data) -> "Manifest":
        if not isinstance(data, dict):
            raise OutputError("invalid manifest: expected an object")
        try:
            return cls(
                schema_version=_expect(data["schema_version"], int, "schema_version"),
                tool_version=_expect(data["tool_version"], str, "tool_version"),
                input_kind=ManifestInputKind(data["input_kind"]),
                input_root=_expect(data["input_root"], str, "input_root"),
                input_path=_expect(data["input_path"], str, "input_path"),
                recursive=_expect(data["recursive"], bool, "recursive"),
                source_hashes=_string_map(data["source_hashes"], "source_hashes"),
                generated_file_hashes=_string_map(
                    data["generated_file_hashes"], "generated_file_hashes"
                ),
            )
        except KeyError as err:
            raise OutputError(f"invalid manifest: missing field {err}") from err
        except ValueError as err:
            raise OutputError(f"invalid manifest: {err}") from err


class OutputLock:
    """Exclusive lock on an output directory, held through a file in the temp dir."""

    def __init__(self, path: Path, handle) -> None:
        self.path = path
        self._handle = handle

    @classmethod
    def acquire(cls, output_root) -> "OutputLock":
        path = _output_lock_path(Path(output_root))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise OutputError(f"failed to create {path.parent}: {err}") from err
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            try:
                holder = path.read_text(encoding="utf-8", errors="replace").strip()
            except OSError:
                holder = ""
            suffix = f" ({holder})" if holder else ""
            raise OutputError(
                f"output is locked by another md-wiki process: {path}{suffix}"
            ) from None
        except OSError as err:
            raise OutputError(f"failed to acquire output lock {path}: {err}") from err
        handle = os.fdopen(fd, "w", encoding="utf-8")
        try:
            handle.write(f"pid={os.getpid()}\n")
            handle.flush()
        except OSError as err:
            handle.close()
            _remove_quietly(path)
            raise OutputError(f"failed to write {path}: {err}") from err
        return cls(path, handle)

    def release(self) -> None:
        """Drop the lock; calling it again does nothing."""
        if self._handle is None:
            return
        self._handle.close()
        self._handle = None
        _remove_quietly(self.path)

    def __enter__(self) -> "OutputLock":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __del__(self) -> None:
        if getattr(self, "_handle", None) is not None:
            self.release()


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def _output_lock_path(output_root: Path) -> Path:
    target = _normalized_lock_target(output_root)
    digest = stable_hash(markdown_path(target).encode("utf-8"))
    return Path(tempfile.gettempdir()) / "md-wiki-locks" / f"{digest}.lock"


def _normalized_lock_target(output_root: Path) -> Path:
    try:
        return output_root.resolve(strict=True)
    except OSError:
        pass
    if output_root.name:
        try:
            return output_root.parent.resolve(strict=True) / output_root.name
        except OSError:
            pass
    return output_root.absolute()


def read_manifest(output_root) -> Manifest:
    """Load and validate the manifest of an existing output directory."""
    path = Path(output_root) / MANIFEST_PATH
    try:
        body = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise OutputError(f"failed to read {path}: {err}") from err
    try:
        manifest = Manifest.from_dict(json.loads(body))
    except (json.JSONDecodeError, OutputError) as err:
        raise OutputError(f"failed to parse {path}: {err}") from err
    if manifest.schema_version != MANIFEST_SCHEMA_VERSION:
        raise OutputError(
            f"unsupported md-wiki manifest schema version: {manifest.schema_version}"
        )
    for rel_key in manifest.generated_file_hashes:
        _validate_relative_output_path(rel_key)
    return manifest


def write_manifest(output_root, manifest: Manifest) -> None:
    path = Path(output_root) / MANIFEST_PATH
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise OutputError(f"failed to create {path.parent}: {err}") from err
    body = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)
    try:
        path.write_bytes(body.encode("utf-8"))
    except OSError as err:
        raise OutputError(f"failed to write {path}: {err}") from err


def insert_text(plan: dict, rel, body: str) -> None:
    plan[_rel(rel)] = body.encode("utf-8")


def insert_bytes(plan: dict, rel, body: bytes) -> None:
    plan[_rel(rel)] = bytes(body)


def collect_markdown_plan_from_dir(root) -> dict:
    """Read every ``.md`` file under ``root`` into a plan keyed by relative path."""
    root = Path(root)
    plan: dict = {}
    if not root.exists():
        return plan
    stack = [root]
    try:
        while stack:
            directory = stack.pop()
            with os.scandir(directory) as it:
                entries = list(it)
            for entry in entries:
                path = Path(entry.path)
                if entry.is_dir(follow_symlinks=False):
                    stack.append(path)
                elif path.suffix == ".md":
                    plan[_rel(path.relative_to(root))] = path.read_bytes()
    except OSError as err:
        raise OutputError(f"failed to read {root}: {err}") from err
    return plan


def write_plan_to_clean_dir(output_root, plan: Mapping) -> None:
    """Empty a previous output directory, then write every planned file."""
    output_root = Path(output_root)
    _clean_output(output_root)
    write_plan_files(output_root, plan)


def write_plan_files(output_root, plan: Mapping) -> None:
    output_root = Path(output_root)
    for rel in sorted(plan, key=_rel):
        _write_file(output_root, rel, plan[rel])


def apply_incremental(output_root, desired: Mapping, previous: Manifest) -> None:
    """Bring an output directory to ``desired``, touching only managed files."""
    output_root = Path(output_root)
    if not output_root.exists():
        try:
            output_root.mkdir(parents=True)
        except OSError as err:
            raise OutputError(f"failed to create {output_root}: {err}") from err
    if not output_root.is_dir():
        raise OutputError(f"output path exists but is not a directory: {output_root}")

    wanted = {_rel(rel): body for rel, body in desired.items()}
    blockers = _preflight_incremental(output_root, wanted, previous)

    for rel in sorted(blockers):
        target = output_root / str(rel)
        if _lstat(target) is not None:
            _remove_file(target)

    for rel in sorted(wanted):
        body = wanted[rel]
        current = _read_existing_regular_file(output_root / str(rel))
        if current == bytes(body):
            continue
        _write_file(output_root, rel, body)

    for rel_key in sorted(previous.generated_file_hashes):
        _validate_relative_output_path(rel_key)
        rel = _rel(rel_key)
        if rel in wanted:
            continue
        target = output_root / str(rel)
        if _lstat(target) is not None:
            _remove_file(target)
            _prune_empty_parents(output_root, rel.parent)


def _remove_file(path: Path) -> None:
    try:
        os.remove(path)
    except OSError as err:
        raise OutputError(f"failed to remove {path}: {err}") from err


def _preflight_incremental(output_root: Path, desired: dict, previous: Manifest) -> set:
    managed = previous.generated_file_hashes
    blockers: set = set()
    for rel in sorted(desired):
        _validate_relative_output_path(rel)
        target = output_root / str(rel)
        meta = _lstat(target)
        if meta is not None:
            if markdown_path(rel) not in managed:
                raise OutputError(f"refusing to overwrite unmanaged file in output: {target}")
            if stat.S_ISLNK(meta.st_mode):
                raise OutputError(f"refusing to follow symlink output path: {target}")
            if not stat.S_ISREG(meta.st_mode):
                raise OutputError(f"refusing to overwrite non-file output path: {target}")
        _preflight_parent_dirs(output_root, rel, desired, managed, blockers)

    for rel_key in sorted(managed):
        _validate_relative_output_path(rel_key)
        rel = _rel(rel_key)
        if rel in desired:
            continue
        target = output_root / str(rel)
        meta = _lstat(target)
        if meta is not None and stat.S_ISDIR(meta.st_mode):
            raise OutputError(
                f"refusing to remove managed output path that is not a file: {target}"
            )
    return blockers


def _preflight_parent_dirs(
    output_root: Path, rel: PurePosixPath, desired: dict, managed: Mapping, blockers: set
) -> None:
    current = PurePosixPath()
    for part in rel.parent.parts:
        current = current / part
        target = output_root / str(current)
        meta = _lstat(target)
        if meta is None:
            continue
        if stat.S_ISDIR(meta.st_mode):
            continue
        if (
            stat.S_ISREG(meta.st_mode)
            and markdown_path(current) in managed
            and current not in desired
        ):
            blockers.add(current)
            continue
        raise OutputError(
            "refusing to create generated file because parent path is not a directory: "
            f"{target}"
        )


def _validate_relative_output_path(path) -> None:
    text = _path_text(path)
    if not text:
        raise OutputError("invalid generated output path in manifest: empty path")
    parts = [part for part in text.split("/") if part]
    if text.startswith("/") or not parts or parts[0] == "." or ".." in parts:
        raise OutputError(f"invalid generated output path in manifest: {text}")


def _lstat(path: Path) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as err:
        raise OutputError(f"failed to inspect {path}: {err}") from err


def _read_existing_regular_file(path: Path) -> Optional[bytes]:
    meta = _lstat(path)
    if meta is None:
        return None
    if stat.S_ISLNK(meta.st_mode):
        raise OutputError(f"refusing to follow symlink output path: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise OutputError(f"output path exists but is not a file: {path}")
    try:
        return path.read_bytes()
    except OSError as err:
        raise OutputError(f"failed to read {path}: {err}") from err


def plan_hashes(plan: Mapping) -> dict:
    """Map each planned path (as written in Markdown) to the hash of its body."""
    hashes = {markdown_path(rel): stable_hash(body) for rel, body in plan.items()}
    return dict(sorted(hashes.items()))


def source_hashes(root, files: Iterable) -> dict:
    """Hash the content of each scanned file under ``root``."""
    root = Path(root)
    hashes = {}
    for scanned in files:
        target = root / scanned.relative_path
        try:
            body = target.read_bytes()
        except OSError as err:
            raise OutputError(f"failed to read {target}: {err}") from err
        hashes[markdown_path(scanned.relative_path)] = stable_hash(body)
    return dict(sorted(hashes.items()))


def stable_hash(data: bytes) -> str:
    """64-bit FNV-1a hash of ``data`` as 16 lower-case hex digits."""
    value = 0xCBF29CE484222325
    for byte in bytes(data):
        value ^= byte
        value = (value * 0x100000001B3) & 0xFFFFFFFFFFFFFFFF
    return f"{value:016x}"


def _clean_output(output_root: Path) -> None:
    if not output_root.exists():
        return
    if not output_root.is_dir():
        raise OutputError(f"output path exists but is not a directory: {output_root}")
    try:
        is_empty = not any(os.scandir(output_root))
    except OSError:
        is_empty = False
    if is_empty:
        return
    looks_like_ours = (
        (output_root / MANIFEST_PATH).exists()
        or (output_root / "index.md").exists()
        or (output_root / "fragments").exists()
    )
    if not looks_like_ours:
        raise OutputError(
            f"refusing to clean {output_root}: does not look like a md-wiki output directory "
            "(no manifest, index.md, or fragments/). Remove it manually or choose a "
            "different --out."
        )
    try:
        shutil.rmtree(output_root)
    except OSError as err:
        raise OutputError(f"failed to clear {output_root}: {err}") from err


def _write_file(root: Path, rel, body: bytes) -> None:
    _validate_relative_output_path(rel)
    rel = _rel(rel)
    _ensure_output_root_dir(root)
    _ensure_parent_dirs(root, rel.parent)
    target = root / str(rel)
    meta = _lstat(target)
    if meta is not None and stat.S_ISLNK(meta.st_mode):
        raise OutputError(f"refusing to follow symlink output path: {target}")
    try:
        target.write_bytes(bytes(body))
    except OSError as err:
        raise OutputError(f"failed to write {target}: {err}") from err


def _ensure_output_root_dir(root: Path) -> None:
    meta = _lstat(root)
    if meta is None:
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise OutputError(f"failed to create {root}: {err}") from err
    elif not stat.S_ISDIR(meta.st_mode):
        raise OutputError(f"output path exists but is not a directory: {root}")


def _ensure_parent_dirs(root: Path, parent: PurePosixPath) -> None:
    current = PurePosixPath()
    for part in parent.parts:
        current = current / part
        target = root / str(current)
        meta = _lstat(target)
        if meta is None:
            try:
                os.mkdir(target)
            except OSError as err:
                raise OutputError(f"failed to create {target}: {err}") from err
        elif not stat.S_ISDIR(meta.st_mode):
            raise OutputError(
                "refusing to create generated file because parent path is not a directory: "
                f"{target}"
            )


def _prune_empty_parents(root: Path, parent: PurePosixPath) -> None:
    current = parent
    while True:
        text = current.as_posix()
        if text in ("", ".", ".md-wiki"):
            return
        target = root / text
        try:
            os.rmdir(target)
        except FileNotFoundError:
            pass
        except OSError as err:
            if err.errno in (errno.ENOTEMPTY, errno.EEXIST):
                return
            raise OutputError(f"failed to remove {target}: {err}") from err
        current = current.parent