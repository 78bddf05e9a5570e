from content_admin.drag import CANCELLED, COMMITTING, DRAGGING, IDLE, PREVIEWING, DragController
from content_admin.persister import REORDER_FAILED_MESSAGE, CommitResult
from content_admin.reorder import ReorderOp
from content_admin.tree_engine import TreeNode, build_forest, clone_forest


def forest() -> list[TreeNode]:
    rows = [
        ("P", None, 0),
        ("A", "P", 0),
        ("B", "P", 1),
        ("C", "P", 2),
        ("P2", None, 1),
        ("D", "P2", 0),
    ]
    return build_forest(
        [TreeNode(id=node_id, parent_id=parent_id, namespace="main", position=position) for node_id, parent_id, position in rows]
    )


def child_ids(tree: list[TreeNode]) -> list[str]:
    return [child.id for child in tree[0].children]


class RecordingCommit:
    def __init__(self, result: CommitResult) -> None:
        self.result = result
        self.calls: list[tuple[str, list[ReorderOp], int | None]] = []

    def __call__(self, namespace: str, ops: list[ReorderOp], version: int | None) -> CommitResult:
        self.calls.append((namespace, ops, version))
        return self.result


def test_drag_preview_and_successful_commit() -> None:
    controller = DragController(forest(), "main", version=3)
    assert controller.drag_start("A") is True
    assert controller.state == DRAGGING

    assert controller.drag_over("C") is True
    assert controller.state == PREVIEWING
    assert child_ids(controller.displayed) == ["B", "C", "A"]
    assert child_ids(controller.baseline) == ["A", "B", "C"]

    pending = controller.drop("C")
    assert pending is not None
    assert controller.state == COMMITTING
    assert list(pending.ops) == [ReorderOp("B", 0, "P"), ReorderOp("C", 1, "P"), ReorderOp("A", 2, "P")]
    assert pending.base_version == 3

    assert controller.resolve(pending, CommitResult(ok=True, version=4, applied=3)) is True
    assert controller.state == IDLE
    assert controller.version == 4
    assert child_ids(controller.baseline) == ["B", "C", "A"]
    assert controller.session is None


def test_drop_on_self_skips_commit() -> None:
    commit = RecordingCommit(CommitResult(ok=True, version=1))
    controller = DragController(forest(), "main")
    controller.drag_start("A")

    assert controller.commit_with(commit, target_id="A") is None
    assert commit.calls == []
    assert controller.state == IDLE
    assert controller.displayed == forest()


def test_cross_parent_target_marks_drop_invalid() -> None:
    controller = DragController(forest(), "main")
    controller.drag_start("A")

    assert controller.drag_over("D") is False
    assert controller.drop_valid is False
    assert controller.state == DRAGGING
    assert controller.displayed == forest()

    assert controller.drop("D") is None
    assert controller.state == IDLE
    assert controller.displayed == forest()


def test_failed_commit_restores_origin() -> None:
    commit = RecordingCommit(CommitResult(ok=False, error="database is locked", reason="storage"))
    controller = DragController(forest(), "main")
    before = clone_forest(controller.displayed)
    controller.drag_start("A")
    controller.drag_over("C")

    result = controller.commit_with(commit)

    assert result is not None and result.ok is False
    assert len(commit.calls) == 1
    assert controller.displayed == before
    assert child_ids(controller.displayed) == ["A", "B", "C"]
    assert controller.last_error == REORDER_FAILED_MESSAGE
    assert controller.state == IDLE


def test_commit_exception_is_treated_as_failure() -> None:
    def exploding_commit(namespace, ops, version):
        raise RuntimeError("connection reset")

    controller = DragController(forest(), "main")
    controller.drag_start("C")
    controller.drag_over("A")

    result = controller.commit_with(exploding_commit)

    assert result is not None
    assert result.ok is False
    assert result.reason == "storage"
    assert child_ids(controller.displayed) == ["A", "B", "C"]


def test_new_gesture_blocked_while_committing() -> None:
    controller = DragController(forest(), "main")
    controller.drag_start("A")
    controller.drag_over("B")
    pending = controller.drop()
    assert pending is not None

    assert controller.drag_start("C") is False
    assert controller.state == COMMITTING

    controller.resolve(pending, CommitResult(ok=True, version=1))
    assert controller.drag_start("C") is True


def test_stale_commit_result_is_discarded_after_cancel() -> None:
    controller = DragController(forest(), "main")
    controller.drag_start("A")
    controller.drag_over("C")
    pending = controller.drop()
    assert pending is not None

    controller.cancel()
    assert controller.state == IDLE
    assert (COMMITTING, CANCELLED) in controller.transitions
    assert child_ids(controller.displayed) == ["A", "B", "C"]

    controller.drag_start("B")
    controller.drag_over("A")
    assert controller.resolve(pending, CommitResult(ok=True, version=9)) is False
    assert controller.version is None
    assert controller.state == PREVIEWING
    assert child_ids(controller.displayed) == ["B", "A", "C"]


def test_reload_invalidates_outstanding_commit() -> None:
    controller = DragController(forest(), "main", version=1)
    controller.drag_start("A")
    controller.drag_over("C")
    pending = controller.drop()

    fresh = forest()
    controller.reload(fresh, version=5)

    assert controller.resolve(pending, CommitResult(ok=False, error="late")) is False
    assert controller.displayed == fresh
    assert controller.version == 5
    assert controller.last_error is None


def test_drag_end_without_drop_restores_origin() -> None:
    controller = DragController(forest(), "main")
    controller.drag_start("A")
    controller.drag_over("B")
    controller.drag_over("C")
    assert child_ids(controller.displayed) == ["B", "C", "A"]

    controller.drag_end()

    assert controller.state == IDLE
    assert child_ids(controller.displayed) == ["A", "B", "C"]
    assert controller.transitions[-2:] == [(PREVIEWING, CANCELLED), (CANCELLED, IDLE)]


def test_repeated_drag_over_same_target_does_not_reapply() -> None:
    controller = DragController(forest(), "main")
    controller.drag_start("A")
    controller.drag_over("B")
    controller.drag_over("B")
    controller.drag_over("B")
    assert child_ids(controller.displayed) == ["B", "A", "C"]


def test_unknown_source_is_not_started() -> None:
    controller = DragController(forest(), "main")
    assert controller.drag_start("missing") is False
    assert controller.state == IDLE
    assert controller.drop() is None
