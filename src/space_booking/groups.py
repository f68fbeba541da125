from __future__ import annotations

import re
from typing import Protocol

from .models import Space, SpaceType

_NUMERIC_SUFFIX_RE = re.compile(r"\s*\d+$")


class SpaceCatalog(Protocol):
    def find_space(self, space_id: str) -> Space: ...

    def find_spaces_by_type_and_map(self, space_type: SpaceType, map_id: str) -> list[Space]: ...


def base_name(name: str) -> str:
    """Return ``name`` without its trailing unit number.

    >>> base_name("Meeting Room 12")
    'Meeting Room'
    """
    return _NUMERIC_SUFFIX_RE.sub("", name).strip()


def derive_group_key(name: str) -> str:
    return base_name(name).casefold()


def group_key(space: Space) -> str:
    # the name-derived key only covers spaces saved before group_key existed
    if space.group_key is not None:
        return space.group_key.casefold()
    return derive_group_key(space.name)


def is_grouped(space: Space) -> bool:
    return space.type == "meeting_room"


def group_of(space: Space, catalog: SpaceCatalog) -> frozenset[str]:
    """Resolve the ids of every space booked together with ``space``."""
    if not is_grouped(space):
        return frozenset({space.space_id})

    key = group_key(space)
    candidates = catalog.find_spaces_by_type_and_map("meeting_room", space.map_id)
    members = {candidate.space_id for candidate in candidates if group_key(candidate) == key}
    # a stale catalog may not list the space itself
    members.add(space.space_id)
    return frozenset(members)


def group_token(space: Space) -> str:
    """Stable identifier of the group, used to key slot locks."""
    if not is_grouped(space):
        return space.space_id
    return f"{space.map_id}/{group_key(space)}"
