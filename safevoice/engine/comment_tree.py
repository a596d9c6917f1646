"""
safevoice.engine.comment_tree — Parent-pointer comment index
=============================================================

Comments are stored flat (id → comment) with a child-list per parent, so
finding, editing or deleting a reply at any depth is a dictionary lookup
instead of a recursive rebuild of the whole thread.  Persistence keeps the
same flat shape: each stored comment names its ``parent_id`` and the tree
is rebuilt on load, so reply depth never touches the interpreter stack.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

from safevoice.constants import DELETED_PLACEHOLDER

if TYPE_CHECKING:
    from safevoice.engine.entities import Comment

logger = logging.getLogger(__name__)

_STORED = object()


class CommentTree:
    """Ordered forest of comments for one post."""

    __slots__ = ("_nodes", "_children")

    def __init__(self) -> None:
        self._nodes: dict[str, Comment] = {}
        # parent id (None = top level) → ordered child ids
        self._children: dict[str | None, list[str]] = {None: []}

    # -- queries ------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, comment_id: object) -> bool:
        return comment_id in self._nodes

    def __iter__(self) -> Iterator[Comment]:
        """Depth-first, in insertion order."""
        stack = list(reversed(self._children[None]))
        while stack:
            comment_id = stack.pop()
            yield self._nodes[comment_id]
            stack.extend(reversed(self._children.get(comment_id, [])))

    def get(self, comment_id: str) -> Comment | None:
        return self._nodes.get(comment_id)

    def children(self, comment_id: str | None) -> list[Comment]:
        return [self._nodes[c] for c in self._children.get(comment_id, [])]

    def roots(self) -> list[Comment]:
        return self.children(None)

    def depth(self, comment_id: str) -> int:
        depth = 0
        node = self._nodes[comment_id]
        while node.parent_id is not None:
            depth += 1
            node = self._nodes[node.parent_id]
        return depth

    # -- mutation -----------------------------------------------------------
    def add(self, comment: Comment) -> None:
        """Insert *comment*; its ``parent_id`` must already be in the tree."""
        if comment.id in self._nodes:
            raise KeyError(f"duplicate comment id {comment.id}")
        if comment.parent_id is not None and comment.parent_id not in self._nodes:
            raise KeyError(f"unknown parent comment {comment.parent_id}")
        self._nodes[comment.id] = comment
        self._children.setdefault(comment.parent_id, []).append(comment.id)
        self._children.setdefault(comment.id, [])

    def remove(self, comment_id: str) -> bool:
        """Delete a comment.

        A comment with replies becomes a ``[deleted]`` placeholder so the
        thread stays intact; a leaf is dropped, and any placeholder ancestors
        left without replies go with it.  Returns ``True`` when the node was
        actually removed.
        """
        comment = self._nodes[comment_id]
        if self._children.get(comment_id):
            comment.content = DELETED_PLACEHOLDER
            comment.author_id = DELETED_PLACEHOLDER
            return False
        self._drop(comment)
        parent = self._nodes.get(comment.parent_id) if comment.parent_id is not None else None
        while parent is not None and parent.is_deleted and not self._children.get(parent.id):
            self._drop(parent)
            parent = self._nodes.get(parent.parent_id) if parent.parent_id is not None else None
        return True

    def _drop(self, comment: Comment) -> None:
        del self._nodes[comment.id]
        self._children.pop(comment.id, None)
        self._children[comment.parent_id].remove(comment.id)

    # -- persistence --------------------------------------------------------
    def to_list(self) -> list[dict[str, Any]]:
        """Flat list, parents before their replies."""
        return [comment.to_dict() for comment in self]

    @classmethod
    def from_list(
        cls,
        raw: Any,
        post_id: str,
        parse: Callable[[dict[str, Any]], Comment],
    ) -> CommentTree:
        """Rebuild from the flat form, dropping malformed entries.

        A dropped comment takes its replies with it.  Entries that still
        carry a nested ``replies`` list are accepted too; for those the
        nesting decides the parent, not the stored field.
        """
        tree = cls()
        if raw is None:
            return tree
        if not isinstance(raw, list):
            logger.warning("Comments for post %s are not a list; resetting", post_id)
            return tree

        # (entry, parent from nesting); _STORED means trust entry["parent_id"]
        pending: deque[tuple[Any, Any]] = deque((item, _STORED) for item in raw)
        dropped = 0
        while pending:
            item, nested_parent = pending.popleft()
            try:
                comment = parse(item)
            except ValueError as exc:
                dropped += 1
                logger.warning("Dropping malformed comment on post %s: %s", post_id, exc)
                continue
            if nested_parent is not _STORED:
                comment.parent_id = nested_parent
            if comment.id in tree or (comment.parent_id is not None and comment.parent_id not in tree):
                dropped += 1
                continue
            comment.post_id = post_id
            tree.add(comment)
            replies = item.get("replies")
            if isinstance(replies, list):
                pending.extend((reply, comment.id) for reply in replies)

        if dropped:
            logger.warning("Dropped %d comment(s) while loading post %s", dropped, post_id)
        return tree
