from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .persister import REORDER_FAILED_MESSAGE, CommitResult
from .reorder import ReorderOp, diff, has_changes, validate_same_parent
from .tree_engine import TreeNode, clone_forest, locate, move_within_siblings

logger = logging.getLogger(__name__)

IDLE = "idle"
DRAGGING = "dragging"
PREVIEWING = "previewing"
COMMITTING = "committing"
CANCELLED = "cancelled"

GESTURE_STATES = {DRAGGING, PREVIEWING}

CommitFunction = Callable[[str, list[ReorderOp], int | None], CommitResult]


@dataclass(slots=True)
class DragSession:
    """Snapshot and progress of one drag gesture."""

    source_id: str
    origin: list[TreeNode]
    last_target_id: str | None = None
    drop_valid: bool = True


@dataclass(slots=True, frozen=True)
class PendingCommit:
    token: int
    namespace: str
    ops: tuple[ReorderOp, ...]
    base_version: int | None


class DragController:
    """Stages drag previews on a forest and reconciles them with commit results.

    The displayed forest is replaced, never edited in place, so the origin
    snapshot taken at drag start stays a valid rollback target. Each drop that
    needs persisting gets a token; results for any other token are stale and
    ignored.
    """

    def __init__(self, forest: list[TreeNode], namespace: str, version: int | None = None) -> None:
        self.namespace = namespace
        self.version = version
        self.baseline = clone_forest(forest)
        self.displayed = clone_forest(forest)
        self.state = IDLE
        self.session: DragSession | None = None
        self.pending: PendingCommit | None = None
        self.last_error: str | None = None
        self.transitions: list[tuple[str, str]] = []
        self._token = 0

    @property
    def drop_valid(self) -> bool:
        return self.session.drop_valid if self.session is not None else False

    def _transition(self, state: str) -> None:
        self.transitions.append((self.state, state))
        logger.debug("drag_transition", extra={"namespace": self.namespace, "from": self.state, "to": state})
        self.state = state
        if state == IDLE:
            self.session = None
            self.pending = None

    def drag_start(self, source_id: str) -> bool:
        if self.state == COMMITTING:
            logger.info("drag_start_blocked", extra={"namespace": self.namespace, "source_id": source_id})
            return False
        if self.state in GESTURE_STATES:
            self.cancel()
        if locate(self.displayed, source_id) is None:
            return False
        self.last_error = None
        self.session = DragSession(source_id=source_id, origin=clone_forest(self.displayed))
        self._transition(DRAGGING)
        return True

    def drag_over(self, target_id: str) -> bool:
        session = self.session
        if session is None or self.state not in GESTURE_STATES:
            return False
        if target_id == session.last_target_id:
            return session.drop_valid

        source = locate(self.displayed, session.source_id)
        target = locate(self.displayed, target_id)
        if source is None or target is None or source.parent_id != target.parent_id:
            session.drop_valid = False
            return False

        session.drop_valid = True
        session.last_target_id = target_id
        if target_id == session.source_id:
            return True

        preview = move_within_siblings(self.displayed, session.source_id, target_id)
        if preview is None:
            session.drop_valid = False
            return False
        self.displayed = preview
        if self.state != PREVIEWING:
            self._transition(PREVIEWING)
        return True

    def drop(self, target_id: str | None = None) -> PendingCommit | None:
        session = self.session
        if session is None or self.state not in GESTURE_STATES:
            return None
        if target_id is not None:
            self.drag_over(target_id)
        if not session.drop_valid:
            self._restore("invalid_drop")
            return None

        if not has_changes(session.origin, self.displayed):
            self._transition(IDLE)
            return None

        ops = diff(session.origin, self.displayed)
        validate_same_parent(session.origin, ops)
        self._token += 1
        self.pending = PendingCommit(
            token=self._token,
            namespace=self.namespace,
            ops=tuple(ops),
            base_version=self.version,
        )
        self._transition(COMMITTING)
        return self.pending

    def resolve(self, pending: PendingCommit, result: CommitResult) -> bool:
        if self.pending is None or pending.token != self.pending.token or self.session is None:
            logger.info("stale_commit_discarded", extra={"namespace": self.namespace, "token": pending.token})
            return False

        if result.ok:
            self.baseline = clone_forest(self.displayed)
            if result.version is not None:
                self.version = result.version
        else:
            self.displayed = clone_forest(self.session.origin)
            self.last_error = REORDER_FAILED_MESSAGE
            logger.warning(
                "drag_rollback",
                extra={"namespace": self.namespace, "reason": result.reason, "error": result.error},
            )
        self._transition(IDLE)
        return True

    def drag_end(self) -> None:
        if self.state in GESTURE_STATES:
            self._restore("drag_end")

    def cancel(self) -> None:
        if self.state == IDLE:
            return
        self._restore("cancel")

    def reload(self, forest: list[TreeNode], version: int | None = None) -> None:
        if self.state != IDLE:
            self._transition(CANCELLED)
        self.baseline = clone_forest(forest)
        self.displayed = clone_forest(forest)
        self.version = version
        self._transition(IDLE)

    def commit_with(self, commit: CommitFunction, target_id: str | None = None) -> CommitResult | None:
        pending = self.drop(target_id)
        if pending is None:
            return None
        try:
            result = commit(pending.namespace, list(pending.ops), pending.base_version)
        except Exception as error:
            logger.exception("reorder_commit_raised", extra={"namespace": self.namespace})
            result = CommitResult(ok=False, error=str(error), reason="storage")
        self.resolve(pending, result)
        return result

    def _restore(self, cause: str) -> None:
        if self.session is not None:
            self.displayed = clone_forest(self.session.origin)
        logger.debug("drag_restored", extra={"namespace": self.namespace, "cause": cause})
        self._transition(CANCELLED)
        self._transition(IDLE)
