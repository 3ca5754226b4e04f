"""Relationship cache for the channel relay.

This module keeps the relay-local view of who must hear about what:
- Mutual contacts (symmetric identity -> identities)
- Group memberships (group id -> identities)
- Rename handling across both mappings

The cache is built from the database at startup and then kept current by
the events flowing through the dispatcher. It is never written back.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable


class RelationshipCache:
    """Contact and group membership index. Callers hold the relay state lock."""

    def __init__(self) -> None:
        self.log = logging.getLogger("waverelay.relationships")
        self.contacts: dict[str, set[str]] = {}
        self.groups: dict[str, set[str]] = {}

    def clear(self) -> None:
        self.contacts.clear()
        self.groups.clear()

    def load(self, snapshot: dict[str, Any]) -> None:
        """Replace the cache with a `load_relationships()` snapshot."""
        self.clear()

        contacts = snapshot.get("contacts") if isinstance(snapshot, dict) else None
        if isinstance(contacts, dict):
            for identity, others in contacts.items():
                if not isinstance(identity, str) or not isinstance(others, (list, set, tuple)):
                    continue
                for other in others:
                    if isinstance(other, str):
                        self.add_contact(identity, other)

        groups = snapshot.get("groups") if isinstance(snapshot, dict) else None
        if isinstance(groups, dict):
            for group, members in groups.items():
                if not isinstance(members, (list, set, tuple)):
                    continue
                self.set_group(str(group), (m for m in members if isinstance(m, str)))

        self.log.info(
            "Loaded relationships contacts=%s groups=%s",
            len(self.contacts),
            len(self.groups),
        )

    # Contacts

    def add_contact(self, a: str, b: str) -> None:
        if a == b:
            return
        self.contacts.setdefault(a, set()).add(b)
        self.contacts.setdefault(b, set()).add(a)

    def remove_contact(self, a: str, b: str) -> None:
        for x, y in ((a, b), (b, a)):
            others = self.contacts.get(x)
            if others is None:
                continue
            others.discard(y)
            if not others:
                self.contacts.pop(x, None)

    def contacts_of(self, identity: str) -> set[str]:
        return set(self.contacts.get(identity, set()))

    # Groups

    def set_group(self, group: str, members: Iterable[str]) -> None:
        member_set = set(members)
        if member_set:
            self.groups[group] = member_set
        else:
            self.groups.pop(group, None)

    def drop_group(self, group: str) -> set[str]:
        return self.groups.pop(group, set())

    def add_member(self, group: str, identity: str) -> None:
        self.groups.setdefault(group, set()).add(identity)

    def remove_member(self, group: str, identity: str) -> None:
        members = self.groups.get(group)
        if members is None:
            return
        members.discard(identity)
        if not members:
            self.groups.pop(group, None)

    def members_of(self, group: str) -> set[str]:
        return set(self.groups.get(group, set()))

    def groups_of(self, identity: str) -> set[str]:
        return {g for g, members in self.groups.items() if identity in members}

    # Identity changes

    def rename(self, old: str, new: str) -> None:
        """Rewrite `old` to `new` as a key and in every back-reference."""
        if old == new:
            return

        others = self.contacts.pop(old, None)
        if others is not None:
            for other in others:
                back = self.contacts.get(other)
                if back is not None:
                    back.discard(old)
                self.add_contact(new, other)

        for members in self.groups.values():
            if old in members:
                members.discard(old)
                members.add(new)

    def get_stats(self) -> dict[str, int]:
        return {
            "contacts": len(self.contacts),
            "contact_edges": sum(len(v) for v in self.contacts.values()) // 2,
            "groups": len(self.groups),
            "memberships": sum(len(v) for v in self.groups.values()),
        }
