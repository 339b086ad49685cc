"""
Project-scoped exclusive lock for restores.

Two layers:
  - an in-process registry, so a second restore (or a change recorded
    while a restore is replacing subtrees) fails fast with ConflictError
  - ``SELECT ... FOR UPDATE`` on the project row, so other database
    sessions writing under the same project serialise behind the restore
    (a no-op on SQLite, which locks the whole database on write anyway)
"""

import logging
import threading
from contextlib import contextmanager

from app.core.exceptions import ConflictError, NotFoundError
from app.models import db
from app.models.project import Project

logger = logging.getLogger(__name__)

_guard = threading.Lock()
_held: set[int] = set()


def is_locked(project_id: int) -> bool:
    with _guard:
        return project_id in _held


def ensure_unlocked(project_id: int) -> None:
    if is_locked(project_id):
        raise ConflictError("Project", "restore_lock", project_id,
                            message=f"Project {project_id} is being restored; retry once it completes")


@contextmanager
def exclusive_project_lock(project_id: int):
    """Hold the project exclusively for the duration of the block; yields the Project row."""
    with _guard:
        if project_id in _held:
            raise ConflictError("Project", "restore_lock", project_id,
                                message=f"A restore is already running for project {project_id}")
        _held.add(project_id)
    logger.debug("Acquired restore lock", extra={"project_id": project_id})
    try:
        project = (
            db.session.query(Project)
            .filter(Project.id == project_id)
            .with_for_update()
            .one_or_none()
        )
        if project is None:
            raise NotFoundError("Project", project_id)
        yield project
    finally:
        with _guard:
            _held.discard(project_id)
        logger.debug("Released restore lock", extra={"project_id": project_id})
