"""
Client, org and message stores of the surrounding CRM
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..clock import utcnow
from ..models.crm import Client, Org, Message


class ClientStore(ABC):
    """Client records: contact fields and tag sets"""

    @abstractmethod
    async def get(self, client_id: str) -> Optional[Client]:
        pass

    @abstractmethod
    async def set_tags(self, client_id: str, tags: List[str]) -> bool:
        """Replace the client's tag set"""
        pass


class OrgStore(ABC):
    """Org records"""

    @abstractmethod
    async def get(self, org_id: str) -> Optional[Org]:
        pass

    @abstractmethod
    async def list_active(self) -> List[Org]:
        pass


class MessageStore(ABC):
    """Messages accepted for delivery"""

    @abstractmethod
    async def add(self, message: Message) -> str:
        pass


class InMemoryClientStore(ClientStore):

    def __init__(self):
        self.clients: Dict[str, Client] = {}

    def add(self, client: Client) -> Client:
        self.clients[client.id] = client
        return client

    async def get(self, client_id: str) -> Optional[Client]:
        return self.clients.get(client_id)

    async def set_tags(self, client_id: str, tags: List[str]) -> bool:
        client = self.clients.get(client_id)
        if client is None:
            return False
        client.tags = list(tags)
        client.updated_at = utcnow()
        return True


class InMemoryOrgStore(OrgStore):

    def __init__(self):
        self.orgs: Dict[str, Org] = {}

    def add(self, org: Org) -> Org:
        self.orgs[org.id] = org
        return org

    async def get(self, org_id: str) -> Optional[Org]:
        return self.orgs.get(org_id)

    async def list_active(self) -> List[Org]:
        return [org for org in self.orgs.values() if org.active]


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self.messages: Dict[str, Message] = {}

    async def add(self, message: Message) -> str:
        self.messages[message.id] = message
        return message.id

    def for_client(self, client_id: str) -> List[Message]:
        return [m for m in self.messages.values() if m.client_id == client_id]
