"""Project file indexer.

Each file on disk is in one of three states relative to the collection:
- Unseen: no stored point -> read, embed, upsert (added)
- Stale: stored mod_time older than the file's mtime -> re-embed, upsert (updated)
- Fresh: mtime unchanged -> skipped without embedding or network calls

Point IDs derive from the absolute path, so an upsert of a stale file
overwrites its previous point.
"""

from __future__ import annotations

import os
import threading
import uuid
from pathlib import Path

from config import CONFIG, Config
from embeddings import Embedder
from errors import InvalidArgument, MemoryClientError, NotFound, OperationCancelled
from models import EXCLUDED_EXTENSIONS, PROJECT_FILE_TYPE, IndexReport, ProjectFile, detect_language
from utils import log, path_id, utc_now
from vector_store import Filter, QdrantStore, match

BINARY_SNIFF_BYTES = 8192


def is_binary(content: bytes) -> bool:
    """NUL bytes, or more than 10% control characters other than tab/LF/CR."""
    sample = content[:BINARY_SNIFF_BYTES]
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    control = sum(1 for b in sample if b < 32 and b not in (9, 10, 13))
    return control / len(sample) > 0.1


def iter_project_files(root: Path):
    """Yield indexable files under ``root``: no hidden entries, no excluded extensions."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if path.suffix.lower() in EXCLUDED_EXTENSIONS:
                continue
            yield path


class ProjectIndexer:
    def __init__(self, store: QdrantStore, embedder: Embedder, config: Config = CONFIG):
        self.store = store
        self.embedder = embedder
        self.config = config

    @staticmethod
    def _resolve_root(path: str | Path) -> Path:
        root = Path(path).expanduser().resolve()
        if not root.is_dir():
            raise InvalidArgument(f"Project path '{path}' is not a directory")
        return root

    def _scope(self, root: Path) -> Filter:
        return Filter(must=[match("type", PROJECT_FILE_TYPE), match("project_root", root.as_posix())])

    def _existing(self, root: Path, cancel: threading.Event | None) -> dict[str, ProjectFile]:
        points = self.store.scroll(self._scope(root), cancel=cancel)
        return {p.payload.get("path", ""): ProjectFile.from_point(p.id, p.payload) for p in points}

    # -------------------------------------------------------------------------
    # Indexing passes
    # -------------------------------------------------------------------------

    def index_project(
        self, path: str | Path, tag: str | None = None, cancel: threading.Event | None = None
    ) -> IndexReport:
        """First-run pass: index files with no stored point."""
        return self._run(path, tag or "", include_stale=False, cancel=cancel)

    def update_project_files(
        self, path: str | Path, tag: str | None = None, cancel: threading.Event | None = None
    ) -> IndexReport:
        """Index unseen files and re-index stale ones."""
        return self._run(path, tag or "", include_stale=True, cancel=cancel)

    def _run(self, path: str | Path, tag: str, include_stale: bool, cancel: threading.Event | None) -> IndexReport:
        root = self._resolve_root(path)
        existing = self._existing(root, cancel)
        report = IndexReport()

        for file_path in iter_project_files(root):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                log(f"Indexing of {root} cancelled")
                break

            rel_path = file_path.relative_to(root).as_posix()
            try:
                stat = file_path.stat()
            except OSError as e:
                report.failed += 1
                report.errors[rel_path] = str(e)
                log(f"Error reading file {rel_path}: {e}")
                continue

            previous = existing.get(rel_path)
            if previous is not None and (not include_stale or stat.st_mtime <= previous.mod_time):
                continue  # fresh, or stale files are not wanted on this pass

            if stat.st_size > self.config.max_file_size:
                report.skipped += 1
                log(f"Warning: skipping {rel_path} ({stat.st_size} bytes > {self.config.max_file_size})")
                continue

            try:
                indexed = self._index_file(root, file_path, rel_path, stat.st_mtime, previous, tag, cancel)
            except OperationCancelled:
                report.cancelled = True
                log(f"Indexing of {root} cancelled")
                break
            except (OSError, MemoryClientError) as e:
                report.failed += 1
                report.errors[rel_path] = str(e)
                log(f"Error indexing file {rel_path}: {e}")
                continue

            if not indexed:
                report.skipped += 1
            elif previous is None:
                report.added += 1
            else:
                report.updated += 1

        if report.added or report.updated or report.failed:
            log(
                f"Indexed {root}: {report.added} added, {report.updated} updated, "
                f"{report.skipped} skipped, {report.failed} failed"
            )
        return report

    def _index_file(
        self,
        root: Path,
        file_path: Path,
        rel_path: str,
        mod_time: float,
        previous: ProjectFile | None,
        tag: str,
        cancel: threading.Event | None,
    ) -> bool:
        raw = file_path.read_bytes()
        if is_binary(raw):
            return False
        project_file = ProjectFile(
            id=path_id(file_path),
            path=rel_path,
            project_root=root.as_posix(),
            content=raw.decode("utf-8", errors="replace"),
            language=detect_language(file_path.suffix),
            mod_time=mod_time,
            tag=previous.tag if previous is not None else tag,
            timestamp=utc_now(),
        )
        vector = self.embedder.embed(project_file.content)
        self.store.upsert(project_file.id, vector, project_file.to_payload(), cancel=cancel)
        return True

    def watch_project(
        self,
        path: str | Path,
        cancel: threading.Event,
        interval: float | None = None,
        tag: str | None = None,
    ) -> None:
        """Poll ``update_project_files`` every ``interval`` seconds until ``cancel`` is set.

        Errors in one cycle are logged and the loop moves on to the next tick.
        """
        interval = self.config.watch_interval if interval is None else interval
        log(f"Watching {path} every {interval}s")
        while not cancel.is_set():
            try:
                report = self.update_project_files(path, tag=tag, cancel=cancel)
            except OperationCancelled:
                break
            except (OSError, MemoryClientError) as e:
                log(f"Error updating project: {e}")
            except Exception as e:
                log(f"Unexpected error updating project: {e!r}")
            else:
                if report.added or report.updated:
                    log(f"Project updated: {report.added} new files, {report.updated} modified files")
            cancel.wait(interval)
        log(f"Stopped watching {path}")

    # -------------------------------------------------------------------------
    # Queries and deletion
    # -------------------------------------------------------------------------

    def search_project_files(self, query: str, limit: int | None = None) -> list[ProjectFile]:
        if not query or not query.strip():
            raise InvalidArgument("query is required")
        limit = self.config.default_limit if not limit or limit <= 0 else min(limit, self.config.max_limit)
        points = self.store.query(
            self.embedder.embed(query), limit, Filter(must=[match("type", PROJECT_FILE_TYPE)])
        )
        return [ProjectFile.from_point(p.id, p.payload, score=p.score) for p in points]

    def list_project_files(self, limit: int | None = None, tag: str | None = None) -> list[ProjectFile]:
        conditions = [match("type", PROJECT_FILE_TYPE)]
        if tag:
            conditions.append(match("tag", tag))
        limit = self.config.max_limit if not limit or limit <= 0 else limit
        points = self.store.scroll(Filter(must=conditions), limit=limit)
        return sorted((ProjectFile.from_point(p.id, p.payload) for p in points), key=lambda f: f.path)

    def delete_project_file(self, path_or_id: str) -> None:
        """Delete by point ID or by file path (absolute, or relative to the CWD)."""
        try:
            point_id = str(uuid.UUID(path_or_id))
        except ValueError:
            point_id = path_id(path_or_id)
        if not self.store.delete_ids([point_id]):
            raise NotFound(f"Project file {path_or_id} not found")

    def delete_project_files_by_tag(self, tag: str) -> int:
        if not tag:
            raise InvalidArgument("tag is required")
        return self.store.delete(Filter(must=[match("type", PROJECT_FILE_TYPE), match("tag", tag)]))
