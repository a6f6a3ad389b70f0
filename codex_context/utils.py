"""Utility helpers for filesystem access, hashing and path handling."""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Sequence

from charset_normalizer import from_bytes

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
}
DEFAULT_EXTENSIONS: tuple[str, ...] = tuple(sorted(LANGUAGE_BY_EXTENSION))
EXCLUDED_DIRS = frozenset(
    {".git", "node_modules", "dist", "build", "coverage", "__pycache__", ".venv", "venv"}
)
MAX_FILE_BYTES = 1_000_000


def resolve_directory(path: Path | str) -> Path:
    """Resolve and validate a user supplied directory path."""
    dir_path = Path(path).expanduser().resolve()
    if not dir_path.exists():
        raise FileNotFoundError(f"Directory does not exist: {dir_path}")
    if not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    return dir_path


def normalize_extensions(values: Iterable[str] | None) -> tuple[str, ...]:
    """Return a sorted, deduplicated tuple of normalized file extensions."""

    if not values:
        return ()
    normalized: set[str] = set()
    for raw in values:
        token = (raw or "").strip().lower()
        if not token:
            continue
        if not token.startswith("."):
            token = f".{token}"
        if token != ".":
            normalized.add(token)
    return tuple(sorted(normalized))


def detect_language(path: Path | str) -> str:
    """Return the language name used by the chunker for *path*."""
    name = str(path).lower()
    if name.endswith(".d.ts"):
        return "typescript"
    return LANGUAGE_BY_EXTENSION.get(Path(name).suffix, "text")


def namespace_for_path(path: Path | str) -> str:
    """Return the vector store namespace for a codebase root."""
    normalized = str(Path(path).expanduser().resolve())
    digest = hashlib.md5(normalized.encode("utf-8")).hexdigest()
    return f"mcp_{digest[:16]}"


def content_hash(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def decode_source(raw: bytes) -> str:
    """Decode file bytes, guessing the encoding when UTF-8 fails."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        pass
    best = from_bytes(raw).best()
    if best is None:
        return raw.decode("utf-8", errors="replace")
    return str(best)


def read_source(path: Path) -> tuple[bytes, str]:
    """Return the raw bytes and decoded text of *path*."""
    raw = path.read_bytes()
    return raw, decode_source(raw)


def _relative_posix(path: Path, root: Path) -> str:
    rel = path.relative_to(root)
    if rel == Path("."):
        return ""
    return rel.as_posix()


def _find_git_root(path: Path) -> Path | None:
    for candidate in (path,) + tuple(path.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _read_gitignore_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def _scope_gitignore_line(line: str, base_dir: str) -> str | None:
    if not line or (line.startswith("#") and not line.startswith(r"\#")):
        return None
    if not base_dir:
        return line
    negated = line.startswith("!")
    prefix = "!" if negated else ""
    body = line[1:] if negated else line
    if body.startswith("/"):
        return f"{prefix}{base_dir}/{body[1:]}"
    if "/" in body.rstrip("/"):
        return f"{prefix}{base_dir}/{body}"
    return f"{prefix}{base_dir}/**/{body}"


def _gitignore_spec(lines: Iterable[str], base_dir: str):
    from pathspec.gitignore import GitIgnoreSpec

    scoped = [
        scoped_line
        for scoped_line in (_scope_gitignore_line(line, base_dir) for line in lines)
        if scoped_line is not None
    ]
    return GitIgnoreSpec.from_lines(scoped)


def _is_ignored(spec, rel_path: str, *, is_dir: bool) -> bool:
    if spec is None or not rel_path:
        return False
    candidate = f"{rel_path}/" if is_dir else rel_path
    return spec.match_file(candidate)


def collect_files(
    root: Path | str,
    *,
    include_hidden: bool = False,
    extensions: Sequence[str] | None = None,
    respect_gitignore: bool = True,
    max_file_bytes: int = MAX_FILE_BYTES,
) -> List[Path]:
    """Collect source files under *root*, honouring .gitignore files on the way down."""

    directory = resolve_directory(root)
    allowed = normalize_extensions(extensions) or DEFAULT_EXTENSIONS
    ignore_root = (_find_git_root(directory) or directory) if respect_gitignore else None
    spec_by_dir: dict[Path, object] = {}
    if ignore_root is not None:
        base = _gitignore_spec([], "")
        for ancestor in reversed((directory,) + tuple(directory.parents)):
            try:
                rel_ancestor = _relative_posix(ancestor, ignore_root)
            except ValueError:
                continue
            gitignore_file = ancestor / ".gitignore"
            if ancestor != directory and gitignore_file.is_file():
                base = base + _gitignore_spec(_read_gitignore_lines(gitignore_file), rel_ancestor)
        spec_by_dir[directory] = base

    files: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory, topdown=True):
        current_dir = Path(dirpath)
        spec = spec_by_dir.get(current_dir)
        if ignore_root is not None:
            gitignore_file = current_dir / ".gitignore"
            if gitignore_file.is_file():
                spec = spec + _gitignore_spec(
                    _read_gitignore_lines(gitignore_file),
                    _relative_posix(current_dir, ignore_root),
                )
        kept: list[str] = []
        for dirname in sorted(dirnames):
            if dirname in EXCLUDED_DIRS:
                continue
            if not include_hidden and dirname.startswith("."):
                continue
            child = current_dir / dirname
            if ignore_root is not None and _is_ignored(
                spec, _relative_posix(child, ignore_root), is_dir=True
            ):
                continue
            spec_by_dir[child] = spec
            kept.append(dirname)
        dirnames[:] = kept

        for filename in filenames:
            if not include_hidden and filename.startswith("."):
                continue
            candidate = current_dir / filename
            if not _matches_extension(candidate, allowed):
                continue
            if ignore_root is not None and _is_ignored(
                spec, _relative_posix(candidate, ignore_root), is_dir=False
            ):
                continue
            try:
                if candidate.stat().st_size > max_file_bytes:
                    continue
            except OSError:
                continue
            files.append(candidate)

    files.sort()
    return files


def _matches_extension(path: Path, extensions: Sequence[str]) -> bool:
    """Return True if *path* ends with any of the provided *extensions*."""

    filename = path.name.lower()
    return any(filename.endswith(ext) for ext in extensions)


def format_path(path: Path | str, base: Path | None = None) -> str:
    """Return a user friendly representation of *path* relative to *base* when possible."""
    path = Path(path)
    if base:
        try:
            relative = path.relative_to(base)
            return f"./{relative.as_posix()}"
        except ValueError:
            return str(path)
    return str(path)


def ensure_positive(value: int, name: str) -> int:
    """Validate that *value* is positive."""
    if value <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return value


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Serialize *payload* next to *path* and move it into place in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
