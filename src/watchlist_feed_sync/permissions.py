"""User permission flags."""

from collections.abc import Iterable
from enum import IntFlag


class Permission(IntFlag):
    """Permission bits, same values as the request service uses."""

    NONE = 0
    ADMIN = 2
    MANAGE_SETTINGS = 4
    MANAGE_USERS = 8
    MANAGE_REQUESTS = 16
    REQUEST = 32
    VOTE = 64
    AUTO_APPROVE = 128
    AUTO_APPROVE_MOVIE = 256
    AUTO_APPROVE_TV = 512
    REQUEST_4K = 1024
    AUTO_REQUEST = 16777216
    AUTO_REQUEST_MOVIE = 33554432
    AUTO_REQUEST_TV = 67108864


def has_any(permissions: int, required: Iterable[Permission]) -> bool:
    """Return True if ``permissions`` grants at least one of ``required``.

    ADMIN grants everything.
    """
    if permissions & Permission.ADMIN:
        return True
    return any(permissions & perm for perm in required)
