from typing import Any, Mapping

from schemas.feed import UserRef


def user_ref(row: Mapping[str, Any], prefix: str = "") -> UserRef | None:
    """Build a :class:`UserRef` from a flat row.

    Plain rows carry ``user_id``/``username``; prefixed rows (e.g. messages)
    carry ``sender_id``/``sender_username`` and so on.
    """
    user_id = row.get(f"{prefix}id" if prefix else "user_id")
    if user_id is None:
        return None
    return UserRef(
        user_id=user_id,
        username=row.get(f"{prefix}username") or "[deleted]",
        profile_pic_src=row.get(f"{prefix}profile_pic_src"),
    )
