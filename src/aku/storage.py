"""Storage backends for the substrate.

Layout of FileAtomStorage (all relative to root):

    atoms/<hash[:depth]>/<hash>     one frontmatter document per atom
    heads/latest                    written via write_text
    heads/domains/<top>             appended via append_line
    WAL/pending.jsonl               appended via append_line
    external-links.jsonl            appended via append_line

Single-line appends rely on O_APPEND atomicity. Atom writes go through a temp
file + rename, so two writers racing on the same hash both land the same bytes.
"""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from aku.errors import AKUParseError, ValidationError
from aku.hashing import is_valid_hash, shard_prefix

if TYPE_CHECKING:
    from collections.abc import Iterator


def _check_relative(name: str) -> None:
    """Reject auxiliary-file names that could escape the storage root."""
    parts = name.split("/")
    if not name or name.startswith("/") or "\\" in name or any(p in ("", ".", "..") for p in parts):
        msg = f"Invalid storage path: {name!r}"
        raise ValidationError(msg)


class AtomStorage(ABC):
    """Persistence for atom documents and the auxiliary append-only files."""

    # ------------------------------------------------------------------
    # Atoms
    # ------------------------------------------------------------------

    @abstractmethod
    def atom_exists(self, content_hash: str) -> bool: ...

    @abstractmethod
    def read_atom(self, content_hash: str) -> str | None:
        """Return the stored document, or None if absent."""

    @abstractmethod
    def write_atom(self, content_hash: str, text: str) -> None:
        """Persist an atom document. Overwrites with identical bytes are harmless."""

    @abstractmethod
    def iter_atom_hashes(self) -> Iterator[str]:
        """Yield stored hashes lazily. Non-hash entries are skipped."""

    @abstractmethod
    def atom_size(self, content_hash: str) -> int:
        """Stored size in bytes (0 if absent)."""

    # ------------------------------------------------------------------
    # Auxiliary files (heads, WAL, external links)
    # ------------------------------------------------------------------

    @abstractmethod
    def append_line(self, name: str, line: str) -> None: ...

    @abstractmethod
    def iter_lines(self, name: str) -> Iterator[str]:
        """Yield non-empty lines of an auxiliary file (nothing if absent)."""

    @abstractmethod
    def write_text(self, name: str, text: str) -> None: ...

    @abstractmethod
    def read_text(self, name: str) -> str | None: ...


class FileAtomStorage(AtomStorage):
    """Filesystem storage rooted at a substrate directory."""

    def __init__(self, root: Path | str, shard_depth: int = 2) -> None:
        self.root = Path(root)
        self.shard_depth = shard_depth

    @property
    def atoms_dir(self) -> Path:
        return self.root / "atoms"

    def atom_path(self, content_hash: str) -> Path:
        return self.atoms_dir / shard_prefix(content_hash, self.shard_depth) / content_hash

    def _aux_path(self, name: str) -> Path:
        _check_relative(name)
        return self.root / name

    # ------------------------------------------------------------------
    # Atoms
    # ------------------------------------------------------------------

    def atom_exists(self, content_hash: str) -> bool:
        return self.atom_path(content_hash).is_file()

    def read_atom(self, content_hash: str) -> str | None:
        path = self.atom_path(content_hash)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            msg = f"Invalid AKU {content_hash}: not valid UTF-8 ({exc})"
            raise AKUParseError(msg) from exc

    def write_atom(self, content_hash: str, text: str) -> None:
        path = self.atom_path(content_hash)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
            Path(tmp).replace(path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def iter_atom_hashes(self) -> Iterator[str]:
        if not self.atoms_dir.is_dir():
            return
        for shard in sorted(self.atoms_dir.iterdir()):
            if not shard.is_dir():
                continue
            for entry in sorted(shard.iterdir()):
                if is_valid_hash(entry.name) and entry.is_file():
                    yield entry.name

    def atom_size(self, content_hash: str) -> int:
        try:
            return self.atom_path(content_hash).stat().st_size
        except FileNotFoundError:
            return 0

    # ------------------------------------------------------------------
    # Auxiliary files
    # ------------------------------------------------------------------

    def append_line(self, name: str, line: str) -> None:
        path = self._aux_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(line.rstrip("\n") + "\n")

    def iter_lines(self, name: str) -> Iterator[str]:
        path = self._aux_path(name)
        if not path.exists():
            return
        with path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield line

    def write_text(self, name: str, text: str) -> None:
        path = self._aux_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def read_text(self, name: str) -> str | None:
        path = self._aux_path(name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None


class MemoryAtomStorage(AtomStorage):
    """Dict-backed storage for tests and throwaway substrates."""

    def __init__(self) -> None:
        self.atoms: dict[str, str] = {}
        self.files: dict[str, str] = {}

    def atom_exists(self, content_hash: str) -> bool:
        return content_hash in self.atoms

    def read_atom(self, content_hash: str) -> str | None:
        return self.atoms.get(content_hash)

    def write_atom(self, content_hash: str, text: str) -> None:
        self.atoms[content_hash] = text

    def iter_atom_hashes(self) -> Iterator[str]:
        # Snapshot keys so concurrent ingests do not break iteration
        for content_hash in sorted(self.atoms):
            if is_valid_hash(content_hash):
                yield content_hash

    def atom_size(self, content_hash: str) -> int:
        text = self.atoms.get(content_hash)
        return len(text.encode("utf-8")) if text is not None else 0

    def append_line(self, name: str, line: str) -> None:
        _check_relative(name)
        self.files[name] = self.files.get(name, "") + line.rstrip("\n") + "\n"

    def iter_lines(self, name: str) -> Iterator[str]:
        _check_relative(name)
        for line in self.files.get(name, "").splitlines():
            line = line.strip()
            if line:
                yield line

    def write_text(self, name: str, text: str) -> None:
        _check_relative(name)
        self.files[name] = text

    def read_text(self, name: str) -> str | None:
        _check_relative(name)
        return self.files.get(name)
