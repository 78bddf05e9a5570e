import pytest

from content_admin.reorder import (
    ReorderOp,
    build_reorder_ops,
    coerce_ops,
    diff,
    has_changes,
    validate_ops,
    validate_same_parent,
)
from content_admin.tree_engine import (
    InvalidMoveError,
    NodeNotFoundError,
    ReorderValidationError,
    TreeNode,
    build_forest,
    clone_forest,
    move_within_siblings,
)


def forest() -> list[TreeNode]:
    rows = [
        ("P", None, 0),
        ("A", "P", 0),
        ("B", "P", 1),
        ("C", "P", 2),
        ("Q", None, 1),
        ("D", "Q", 0),
        ("E", "Q", 1),
    ]
    return build_forest(
        [TreeNode(id=node_id, parent_id=parent_id, namespace="main", position=position) for node_id, parent_id, position in rows]
    )


def test_build_reorder_ops_lists_parents_before_children() -> None:
    ops = build_reorder_ops(forest())
    assert [op.node_id for op in ops] == ["P", "A", "B", "C", "Q", "D", "E"]
    assert ops[0] == ReorderOp("P", 0, None)
    assert ops[3] == ReorderOp("C", 2, "P")


def test_diff_drag_first_sibling_onto_last() -> None:
    before = forest()
    after = move_within_siblings(before, "A", "C")
    assert diff(before, after) == [
        ReorderOp("B", 0, "P"),
        ReorderOp("C", 1, "P"),
        ReorderOp("A", 2, "P"),
    ]


def test_diff_contains_only_changed_nodes() -> None:
    before = forest()
    after = move_within_siblings(before, "E", "D")
    ops = diff(before, after)
    assert ops == [ReorderOp("E", 0, "Q"), ReorderOp("D", 1, "Q")]
    assert diff(before, clone_forest(before)) == []


def test_has_changes_detects_reorders_only() -> None:
    before = forest()
    assert has_changes(before, clone_forest(before)) is False
    assert has_changes(before, move_within_siblings(before, "B", "A")) is True
    shorter = clone_forest(before)
    shorter[1].children.pop()
    assert has_changes(before, shorter) is True


def test_validate_same_parent_rejects_parent_changes() -> None:
    before = forest()
    validate_same_parent(before, [ReorderOp("A", 2, "P")])
    with pytest.raises(InvalidMoveError):
        validate_same_parent(before, [ReorderOp("A", 0, "Q")])
    with pytest.raises(InvalidMoveError):
        validate_same_parent(before, [ReorderOp("A", 0, None)])
    with pytest.raises(NodeNotFoundError):
        validate_same_parent(before, [ReorderOp("Z", 0, "P")])


def test_validate_ops_rejects_duplicates() -> None:
    validate_ops([ReorderOp("A", 0, "P"), ReorderOp("B", 0, "Q"), ReorderOp("C", 0, None)])
    with pytest.raises(ReorderValidationError, match="Duplicate position 1 found for parent P"):
        validate_ops([ReorderOp("A", 1, "P"), ReorderOp("B", 1, "P")])
    with pytest.raises(ReorderValidationError, match="Duplicate node"):
        validate_ops([ReorderOp("A", 0, "P"), ReorderOp("A", 1, "P")])
    with pytest.raises(ReorderValidationError, match="own parent"):
        validate_ops([ReorderOp("A", 0, "A")])


def test_reorder_op_from_dict_normalizes_parent() -> None:
    assert ReorderOp.from_dict({"id": "A", "position": 2}) == ReorderOp("A", 2, None)
    assert ReorderOp.from_dict({"id": "A", "position": 2, "parentId": "P"}) == ReorderOp("A", 2, "P")
    assert ReorderOp.from_dict({"id": "A", "position": 2, "parent_id": ""}) == ReorderOp("A", 2, None)
    assert ReorderOp("A", 2, "P").as_dict() == {"id": "A", "position": 2, "parent_id": "P"}
    assert ReorderOp("A", 2).as_dict() == {"id": "A", "position": 2}


@pytest.mark.parametrize(
    "item",
    [
        {"position": 1},
        {"id": "A", "position": -1},
        {"id": "A", "position": True},
        {"id": "A", "position": "1"},
        {"id": "A", "position": 0, "parent_id": 5},
        "A",
    ],
)
def test_reorder_op_from_dict_rejects_malformed_items(item) -> None:
    with pytest.raises(ReorderValidationError):
        coerce_ops([item])
