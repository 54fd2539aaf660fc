"""
Sync planning: derive the target group for each organizational unit and
decide whether it already exists.
"""

import logging
from typing import Optional

from ou_group_sync.config import GroupSettings
from ou_group_sync.errors import GraphAPIError, QueryFailed
from ou_group_sync.graph_client import GraphClient
from ou_group_sync.logging_setup import SyncLog
from ou_group_sync.models import GroupSpec, OrganizationalUnit


def escape_rule_value(value: str) -> str:
    """Escape double quotes for a membership rule string literal."""
    return value.replace('"', '`"')


def build_membership_rule(attribute: str, unit_name: str) -> str:
    return f'(device.{attribute} -eq "{escape_rule_value(unit_name)}")'


def build_mail_nickname(display_name: str) -> str:
    return display_name.lower().replace(' ', '')


class SyncPlanner:
    """Maps organizational units to group specs and checks the target for them."""

    def __init__(self, settings: GroupSettings, graph: Optional[GraphClient] = None,
                 log: Optional[SyncLog] = None):
        self.settings = settings
        self.graph = graph
        self.log = log or SyncLog()

    def plan(self, unit: OrganizationalUnit) -> GroupSpec:
        """
        Compute the group spec for an organizational unit.

        The result depends only on the unit and the group settings.
        """
        unit_name = unit.name.strip()
        display_name = f"{self.settings.name_prefix}{unit_name}"
        description = self.settings.description_template.format(
            name=unit_name,
            distinguished_name=unit.distinguished_name
        )
        return GroupSpec(
            display_name=display_name,
            description=description,
            membership_rule=build_membership_rule(self.settings.device_attribute, unit_name),
            mail_nickname=build_mail_nickname(display_name)
        )

    def exists(self, display_name: str) -> bool:
        """
        Check whether a group with exactly this display name exists.

        Raises:
            QueryFailed: On transport, authentication or API errors
        """
        try:
            matches = self.graph.find_groups_by_display_name(display_name)
        except GraphAPIError as e:
            raise QueryFailed(display_name, e)

        if len(matches) > 1:
            self.log.log(logging.WARNING, f"Found {len(matches)} groups named '{display_name}'")
        return len(matches) > 0
