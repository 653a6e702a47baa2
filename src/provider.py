from __future__ import annotations

from typing import AbstractSet

from entities.github import Group, MembershipDiff, first_attr


def is_ignored(member: str, ignored_users: AbstractSet[str]) -> bool:
    return first_attr(member).lower() in ignored_users


def diff_existing_updated(existing: Group, updated: Group, ignored_users: AbstractSet[str] = frozenset()) -> MembershipDiff:
    """Membership differences between an observed and a desired group.

    Members are matched case-insensitively. Added members keep the spelling of `updated`,
    removed members the spelling of `existing`. Subjects in `ignored_users` (lower-cased)
    never show up in the result.
    """
    existing_members = existing.member_strings_insensitive
    updated_members = updated.member_strings_insensitive

    added = {m for m in updated.member_strings if m.lower() not in existing_members and not is_ignored(m, ignored_users)}
    removed = {m for m in existing.member_strings if m.lower() not in updated_members and not is_ignored(m, ignored_users)}
    return MembershipDiff(added=added, removed=removed)
