from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Literal, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import NoActiveProject

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CONFIG_DOCUMENT = "config"
ROADMAP_DOCUMENT = "roadmap"
HISTORY_DOCUMENT = "learning_history"
ACTIVE_PROJECT_FILE = "active_project.txt"

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_document(path: Path) -> dict[str, Any]:
    """Read a JSON object from *path*.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, not UTF-8, not JSON, or not an object.
    """
    if not path.is_file():
        raise FileNotFoundError(f"document not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"document at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"document at {path} is empty")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"document at {path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"document at {path} is not a JSON object")
    return data


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaveResult:
    status: Literal["ok", "conflict", "failure"]
    revision: int | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class DocumentStore:
    """File-backed keyed document store.

    Documents live at ``<root>/<scope>/<name>.json``. ``load`` and ``save`` never
    raise: a missing or unreadable document loads as ``None`` and every save
    reports a :class:`SaveResult`. Each saved document carries a monotonic
    ``revision`` checked under an exclusive ``fcntl`` lock.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def document_path(self, scope: str, name: str) -> Path:
        parts = [sanitize_project_id(part) for part in scope.split("/") if part.strip()]
        return self.root.joinpath(*parts, f"{sanitize_project_id(name)}.json")

    def load(self, scope: str, name: str) -> dict[str, Any] | None:
        try:
            path = self.document_path(scope, name)
            if not path.is_file():
                return None
            with _locked_file(path):
                return _read_document(path)
        except (OSError, ValueError) as exc:
            logger.warning("Could not load %s/%s: %s", scope, name, exc)
            return None

    def save(
        self,
        scope: str,
        name: str,
        document: dict[str, Any],
        *,
        expected_revision: int | None = None,
    ) -> SaveResult:
        """Persist ``document`` with the next revision number.

        When ``expected_revision`` is given the write only happens if the stored
        revision still equals it (``0`` means the document must not exist yet).
        """
        try:
            path = self.document_path(scope, name)
            with _locked_file(path):
                current = 0
                if path.is_file():
                    current = int(_read_document(path).get("revision", 0))
                if expected_revision is not None and current != expected_revision:
                    logger.warning(
                        "Revision conflict on %s/%s: expected %s, found %s", scope, name, expected_revision, current
                    )
                    return SaveResult(
                        status="conflict",
                        revision=current,
                        message=f"expected revision {expected_revision}, found {current}",
                    )
                revision = current + 1
                payload = dict(document)
                payload["revision"] = revision
                _atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False))
                return SaveResult(status="ok", revision=revision)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Could not save %s/%s: %s", scope, name, exc)
            return SaveResult(status="failure", message=str(exc))

    def load_model(self, scope: str, name: str, schema: type[ModelT]) -> ModelT | None:
        data = self.load(scope, name)
        if data is None:
            return None
        try:
            return schema.model_validate(data)
        except ValidationError as exc:
            logger.warning("%s at %s/%s failed validation: %s", schema.__name__, scope, name, exc.errors()[:1])
            return None

    def save_model(self, scope: str, name: str, model: BaseModel) -> SaveResult:
        """Save a model that carries its own ``revision`` as a compare-and-swap."""
        expected = getattr(model, "revision", None)
        return self.save(scope, name, model.model_dump(mode="json"), expected_revision=expected)


def project_scope(project_id: str, path_name: str | None = None) -> str:
    """Scope string for a project, or for one learning path inside it."""
    scope = f"projects/{sanitize_project_id(project_id)}"
    if path_name is None:
        return scope
    return f"{scope}/paths/{sanitize_project_id(path_name)}"


# ---------------------------------------------------------------------------
# Active project
# ---------------------------------------------------------------------------


class FileProjectContext:
    """Tracks the active project in ``<root>/active_project.txt``."""

    def __init__(self, store: DocumentStore, *, default_project_id: str = "") -> None:
        self.store = store
        self.default_project_id = default_project_id.strip()

    @property
    def marker_path(self) -> Path:
        return self.store.root / ACTIVE_PROJECT_FILE

    def require_active_project(self) -> str:
        if self.marker_path.is_file():
            value = self.marker_path.read_text(encoding="utf-8").strip()
            if value:
                return value
        if self.default_project_id:
            return sanitize_project_id(self.default_project_id)
        raise NoActiveProject("No active project; run 'init' or set PLANNER_PROJECT_ID")

    def activate(self, project_id: str) -> str:
        slug = sanitize_project_id(project_id)
        _atomic_write_text(self.marker_path, f"{slug}\n")
        return slug


def sanitize_project_id(project_id: str) -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Raises:
        ValueError: If the identifier is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("identifier must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    if not value:
        raise ValueError("identifier contains no filesystem-safe characters")
    return value[:128]
