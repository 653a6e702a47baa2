from __future__ import annotations

import config
from entities.github import ImplementationStep, OrgRole, first_attr
from github_service import GitHubService, response_json

logger = config.get_logger(service="org_service")


class OrgService(GitHubService):
    def sync(self, implementation: list[ImplementationStep], role: OrgRole) -> bool:
        """Apply the steps of one role action. Returns True if anything changed."""
        added_members = []
        removed_members = []

        for step in implementation:
            username = first_attr(step.subject).lower()
            if step.moved_to is not None:
                # Adding the user to the new role vacates this one
                logger.debug(f"sync({role.value}): {username} leaves for {step.moved_to.value}, no call needed")
                continue
            if step.operation == "add":
                if self.add_user_to_organization(username, role):
                    added_members.append(username)
            elif self.remove_user_from_organization(username):
                removed_members.append(username)

        logger.debug(f"sync({role.value}): Added {len(added_members)}, removed {len(removed_members)}")
        return bool(added_members or removed_members)

    def add_user_to_organization(self, user: str, role: OrgRole) -> bool:
        """Upsert a user with a role. The membership may end up active or pending."""
        logger.debug(f"{self.identifier} add_user_to_organization(user={user}, org={self.org}, role={role.value})")
        response = self.rest_mutate("PUT", f"/orgs/{self.org}/memberships/{user}", json={"role": role.value})
        if response is None:
            return False

        membership = response_json(response)
        if membership.get("role") == role.value:
            if membership.get("state") == "pending":
                pending = self.run_cache.pending_members.get(self.org_signature)
                if pending is not None:
                    pending.add(user)
                return True
            if membership.get("state") == "active":
                entry = self.run_cache.org_members.get(self.org_signature)
                if entry is not None:
                    entry.value[user] = role
                return True

        logger.debug(f"Unexpected membership response for {user}", extra={"membership": membership})
        logger.error(f"Failed to adjust membership for {user} in organization {self.org} with role {role.value}!")
        return False

    def remove_user_from_organization(self, user: str) -> bool:
        logger.debug(f"{self.identifier} remove_user_from_organization(user={user}, org={self.org})")
        response = self.rest_mutate("DELETE", f"/orgs/{self.org}/memberships/{user}")
        if response is None:
            return False

        # Team operations in this organization must not see the user anymore
        entry = self.run_cache.org_members.get(self.org_signature)
        if entry is not None:
            entry.value.pop(user, None)
        self.run_cache.pending_members.get(self.org_signature, set()).discard(user)
        return True
