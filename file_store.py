"""
On-disk storage for the local state server

Record lists (books, needs, donation requests) are pretty-printed JSON arrays
under ``data_dir``. Page state lives in ``state_dir/<page>.json``, and every
page save is committed to the git repository at ``repo_dir``.
"""
import json
import logging
import os
import re
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from config import Settings
from schemas import Book, CollectionNeed, DonationRequest, StateUser

logger = logging.getLogger("ketab.file_store")

M = TypeVar("M", bound=BaseModel)

PAGE_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


class GitError(Exception):
    """A git command failed; the message carries git's own output."""


class InvalidPageName(ValueError):
    pass


def _write_json(path: Path, data: Any) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


class GitRepository:
    def __init__(self, path: Path):
        self.path = Path(path).resolve()

    def _run(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.path,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e
        except subprocess.CalledProcessError as e:
            raise GitError((e.stderr or e.stdout or str(e)).strip()) from e
        return result.stdout

    def _relative(self, path: Path) -> str:
        return os.path.relpath(Path(path).resolve(), self.path)

    def ensure_initialized(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        try:
            self._run("rev-parse", "--git-dir")
        except GitError:
            self._run("init", "-q")
            logger.info("Initialized git repository in %s", self.path)

    def has_staged_changes(self, rel: str) -> bool:
        try:
            result = subprocess.run(
                ["git", "diff", "--cached", "--quiet", "--", rel],
                cwd=self.path,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e
        if result.returncode not in (0, 1):
            raise GitError(result.stderr.strip())
        return result.returncode == 1

    def commit_file(self, path: Path, message: str, author: Optional[str] = None) -> bool:
        """Stage and commit only ``path``; ``False`` if its content was unchanged."""
        rel = self._relative(path)
        self._run("add", "--", rel)
        if not self.has_staged_changes(rel):
            return False
        args = ["commit", "-q", "-m", message]
        if author:
            args.append(f"--author={author}")
        self._run(*args, "--", rel)
        return True

    def restore_index(self, path: Path) -> None:
        rel = self._relative(path)
        if Path(path).exists():
            self._run("add", "--", rel)
        else:
            self._run("rm", "-q", "--cached", "--ignore-unmatch", "--", rel)

    def history(self, path: Path) -> List[Dict[str, str]]:
        # newest first
        out = self._run("log", "--format=%an%x00%ae%x00%s", "--", self._relative(path))
        entries = []
        for line in out.splitlines():
            name, email, subject = line.split("\x00", 2)
            entries.append({"name": name, "email": email, "message": subject})
        return entries


class RecordFile(Generic[M]):
    """A JSON array of ``model`` records, rewritten whole on every change."""

    def __init__(self, path: Path, model: Type[M]):
        self.path = Path(path)
        self.model = model
        self._lock = threading.Lock()

    def _read(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable record file %s", self.path)
            return []
        return data if isinstance(data, list) else []

    def _write(self, records: List[dict]) -> None:
        _write_json(self.path, records)

    def all(self) -> List[M]:
        with self._lock:
            return [self.model.model_validate(r) for r in self._read()]

    def add(self, record: M) -> M:
        with self._lock:
            records = self._read()
            records.append(record.model_dump(mode="json", by_alias=True))
            self._write(records)
        return record

    def update(self, record_id: str, changes: BaseModel) -> Optional[M]:
        """Merge the fields set on ``changes`` into the record.

        Returns ``None`` for an unknown id. Raises ``ValidationError`` when the
        merged record is invalid; the file is left untouched in that case.
        """
        with self._lock:
            records = self._read()
            for i, raw in enumerate(records):
                if raw.get("id") == record_id:
                    merged = self.model.model_validate(
                        {**raw, **changes.model_dump(by_alias=True, exclude_unset=True)}
                    )
                    records[i] = merged.model_dump(mode="json", by_alias=True)
                    self._write(records)
                    return merged
        return None

    def replace(self, record: M) -> None:
        with self._lock:
            records = self._read()
            for i, raw in enumerate(records):
                if raw.get("id") == record.id:
                    records[i] = record.model_dump(mode="json", by_alias=True)
            self._write(records)

    def delete(self, record_id: str) -> None:
        with self._lock:
            records = [r for r in self._read() if r.get("id") != record_id]
            self._write(records)

    def get(self, record_id: str) -> Optional[M]:
        return next((r for r in self.all() if r.id == record_id), None)


class PageFiles:
    """Per-page JSON state, each write recorded as a git commit."""

    def __init__(self, state_dir: Path, repo: GitRepository):
        self.state_dir = Path(state_dir)
        self.repo = repo
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, page: str) -> Path:
        if not PAGE_NAME.match(page):
            raise InvalidPageName(f"Invalid page name: {page!r}")
        return self.state_dir / f"{page}.json"

    def _lock_for(self, page: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(page, threading.Lock())

    def read(self, page: str) -> Any:
        # a corrupt file raises ValueError; only absence means empty
        path = self.path_for(page)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def write(self, page: str, state: Any, user: Optional[StateUser] = None) -> None:
        """Write ``state`` and commit it, or leave disk as it was and raise.

        An unchanged state is written but adds no commit.
        """
        path = self.path_for(page)
        name = user.name if user else None
        email = user.email if user else None
        message = f"Update state for {page} by {name or 'unknown user'}"
        author = f"{name} <{email}>" if name and email else None

        with self._lock_for(page):
            previous = path.read_bytes() if path.exists() else None
            _write_json(path, state)
            try:
                committed = self.repo.commit_file(path, message, author)
            except GitError as e:
                logger.error("Commit for page %s failed, rolling back: %s", page, e)
                self._rollback(path, previous)
                raise
        if committed:
            logger.info("Committed state for page %s by %s", page, name or "unknown user")
        else:
            logger.info("State for page %s unchanged, nothing to commit", page)

    def _rollback(self, path: Path, previous: Optional[bytes]) -> None:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(previous)
            os.replace(tmp, path)
        try:
            self.repo.restore_index(path)
        except GitError as e:
            logger.warning("Could not reset index for %s: %s", path, e)


class ServerContext:
    """Directories, record files and git repository for one server process.

    Built once at start-up; creates missing directories and runs ``git init``
    when ``repo_dir`` is not yet a repository. ``state_dir`` must sit inside
    ``repo_dir``.
    """

    def __init__(self, state_dir: Path, data_dir: Path, repo_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir)
        self.data_dir = Path(data_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.repo = GitRepository(Path(repo_dir) if repo_dir is not None else self.state_dir)
        self.repo.ensure_initialized()

        self.books: RecordFile[Book] = RecordFile(self.data_dir / "books.json", Book)
        self.needs: RecordFile[CollectionNeed] = RecordFile(
            self.data_dir / "needs.json", CollectionNeed
        )
        self.donations: RecordFile[DonationRequest] = RecordFile(
            self.data_dir / "donationRequests.json", DonationRequest
        )
        self.pages = PageFiles(self.state_dir, self.repo)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServerContext":
        return cls(
            state_dir=Path(settings.state_dir),
            data_dir=Path(settings.data_dir),
            repo_dir=Path(settings.repo_dir),
        )
