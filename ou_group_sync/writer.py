"""Target writer: creates planned groups in the identity provider."""

from typing import Optional

from ou_group_sync.errors import CreationFailed, GraphAPIError
from ou_group_sync.graph_client import GraphClient
from ou_group_sync.logging_setup import SyncLog
from ou_group_sync.models import GroupSpec


class GroupWriter:
    """Creates dynamic device groups through the Graph client."""

    def __init__(self, graph: GraphClient, log: Optional[SyncLog] = None):
        self.graph = graph
        self.log = log or SyncLog()

    def create_group(self, spec: GroupSpec) -> str:
        """
        Create the group described by ``spec``.

        Returns:
            Id of the new group

        Raises:
            CreationFailed: Wrapping the underlying provider error
        """
        try:
            group_id = self.graph.create_group(spec)
        except GraphAPIError as e:
            raise CreationFailed(spec.display_name, e)

        self.log.debug(f"Group '{spec.display_name}' created with rule {spec.membership_rule}")
        return group_id
