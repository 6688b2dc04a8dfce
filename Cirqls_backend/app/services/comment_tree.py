import logging
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

from app.errors import DataIntegrityFailure
from app.services.reactions import aggregate
from app.utils.age import format_age, utcnow
from app.utils.refs import user_ref
from schemas.feed import CommentNode

logger = logging.getLogger("cirqls.comments")


def _to_node(row: Mapping[str, Any], reaction_rows, viewer_id, now: datetime) -> CommentNode:
    return CommentNode(
        comment_id=row["comment_id"],
        parent_comment_id=row.get("parent_comment_id"),
        post_id=row["post_id"],
        commenter=user_ref(row),
        message=row.get("message") or "",
        created_at=row.get("created_at"),
        created_since=format_age(row.get("created_at"), now),
        reactions=aggregate(reaction_rows, viewer_id),
        child_comments=[],
    )


def _closes_cycle(attached_to: dict[int, int], child_id: int, parent_id: int) -> bool:
    # attached_to only ever holds accepted edges, so this walk terminates
    current = parent_id
    while current is not None:
        if current == child_id:
            return True
        current = attached_to.get(current)
    return False


def build_forest(
    rows: Iterable[Mapping[str, Any]],
    reactions_by_comment: Mapping[int, Iterable[Mapping[str, Any]]] | None = None,
    viewer_id: int | None = None,
    now: datetime | None = None,
) -> list[CommentNode]:
    """Assemble flat comment rows into a forest of nested :class:`CommentNode`.

    Rows are indexed by ``comment_id`` first, then each row is attached to its
    parent in the order it was supplied. A row whose parent is missing from
    the batch becomes a root, as does a row whose attachment would close a
    cycle, so every row appears exactly once in the result.

    ``reactions_by_comment`` maps a comment id to its reaction rows; the
    viewer's own reaction is resolved against ``viewer_id``.

    Raises :class:`DataIntegrityFailure` on a duplicate comment id or on a
    parent that belongs to a different post.
    """
    reactions_by_comment = reactions_by_comment or {}
    now = now or utcnow()

    nodes: dict[int, CommentNode] = {}
    for row in rows:
        comment_id = row["comment_id"]
        if comment_id in nodes:
            logger.error("duplicate comment id in tree build comment_id=%s", comment_id)
            raise DataIntegrityFailure(f"Duplicate comment id {comment_id}")
        nodes[comment_id] = _to_node(row, reactions_by_comment.get(comment_id), viewer_id, now)

    roots: list[CommentNode] = []
    attached_to: dict[int, int] = {}
    for node in nodes.values():
        parent_id = node.parent_comment_id
        parent = nodes.get(parent_id) if parent_id is not None else None
        if parent is None:
            roots.append(node)
            continue
        if parent.post_id != node.post_id:
            logger.error(
                "comment parent on another post comment_id=%s parent_id=%s",
                node.comment_id,
                parent_id,
            )
            raise DataIntegrityFailure(f"Comment {node.comment_id} has a parent on another post")
        if _closes_cycle(attached_to, node.comment_id, parent_id):
            logger.warning("cyclic comment parents, treating as root comment_id=%s", node.comment_id)
            roots.append(node)
            continue
        parent.child_comments.append(node)
        attached_to[node.comment_id] = parent_id
    return roots


def iter_nodes(forest: Iterable[CommentNode]) -> Iterator[CommentNode]:
    """Depth-first walk over every node of a forest."""
    stack = list(reversed(list(forest)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.child_comments))


def find_node(forest: Iterable[CommentNode], comment_id: int) -> CommentNode | None:
    for node in iter_nodes(forest):
        if node.comment_id == comment_id:
            return node
    return None


def flat_nodes(
    rows: Iterable[Mapping[str, Any]],
    reactions_by_comment: Mapping[int, Iterable[Mapping[str, Any]]] | None = None,
    viewer_id: int | None = None,
    now: datetime | None = None,
) -> list[CommentNode]:
    """One childless node per row, in row order. Used for per-user listings."""
    reactions_by_comment = reactions_by_comment or {}
    now = now or utcnow()
    return [_to_node(row, reactions_by_comment.get(row["comment_id"]), viewer_id, now) for row in rows]
