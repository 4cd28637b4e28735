"""Authorization of private broadcast channels.

Two channel families exist: ``orders.{userId}`` carries status changes of the
orders a user owns and ``users.{id}`` carries user-level messages. A user may
only listen to channels bearing their own id.
"""

import re
from typing import Optional

CHANNEL_PATTERNS = (
    re.compile(r"^(?:private-)?orders\.(?P<owner>[^.]+)$"),
    re.compile(r"^(?:private-)?users\.(?P<owner>[^.]+)$"),
)


def _same_user(left: str, right: str) -> bool:
    left, right = str(left).strip(), str(right).strip()
    if left.isdecimal() and right.isdecimal():
        return int(left) == int(right)
    return left == right


def can_receive(user_id: Optional[str], order_owner_id: str) -> bool:
    """Check whether a user may receive events about an order.

    Args:
        user_id: The listening user, None when anonymous.
        order_owner_id: Owner of the order the event is about.

    Returns:
        bool: True only when the user owns the order.
    """
    if not user_id:
        return False
    return _same_user(user_id, order_owner_id)


def channel_owner(channel_name: str) -> Optional[str]:
    """Extract the owner id of a known channel, or None for unknown channels."""
    for pattern in CHANNEL_PATTERNS:
        match = pattern.match(channel_name.strip())
        if match:
            return match.group("owner")
    return None


def authorize_channel(user_id: Optional[str], channel_name: str) -> bool:
    """Decide whether a user may subscribe to a channel.

    Args:
        user_id: The subscribing user, None when anonymous.
        channel_name: Name of the channel, e.g. ``orders.42``.

    Returns:
        bool: True when the channel belongs to the user.
    """
    owner = channel_owner(channel_name)
    if owner is None:
        return False
    return can_receive(user_id, owner)


def order_channel(user_id: str) -> str:
    """Name of the channel carrying a user's order status changes."""
    return f"orders.{user_id}"
