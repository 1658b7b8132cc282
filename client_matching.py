"""
Client directory and deterministic client matching.

The directory is a read-only list of client records loaded from
clients.yaml in the data repository:

    clients:
      - id: acme
        name: Acme
        contacts: [jane@acme.com, bob@gmail.com]
        domains: [acme.com]
        notes_doc: acme-notes
        todoist_project: "2203306141"
        setup_complete: true

ClientMatcher resolves a list of addresses to at most one client. Exact
contact matches across all clients always win over domain matches; within
a pass the first client in directory order wins.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'[\w.+\'-]+@[\w-]+(?:\.[\w-]+)+')


def normalize_address(address) -> str | None:
    """Lowercase and trim an address. Returns None for anything unusable."""
    if not isinstance(address, str):
        return None
    address = address.strip().lower()
    if not address or address.count('@') != 1:
        return None
    local, domain = address.split('@')
    if not local or not domain:
        return None
    return address


def extract_addresses(text: str | None) -> list[str]:
    """Pull email addresses out of a header value, preserving order."""
    if not text:
        return []
    seen = []
    for match in EMAIL_PATTERN.findall(text):
        address = match.lower()
        if address not in seen:
            seen.append(address)
    return seen


@dataclass(frozen=True)
class Client:
    id: str
    name: str
    contacts: tuple[str, ...] = ()
    domains: frozenset[str] = field(default_factory=frozenset)
    notes_doc_id: str | None = None
    task_project_id: str | None = None
    base_label: str = ''
    summaries_label: str = ''
    agendas_label: str = ''
    setup_complete: bool = False

    @classmethod
    def from_record(cls, record: dict) -> 'Client':
        name = str(record['name']).strip()
        contacts = []
        for raw in record.get('contacts') or []:
            address = normalize_address(raw)
            if address and address not in contacts:
                contacts.append(address)
        domains = frozenset(
            str(d).strip().lower().lstrip('@') for d in (record.get('domains') or []) if str(d).strip()
        )
        labels = record.get('labels') or {}
        base = labels.get('base') or f"Client: {name}"
        return cls(
            id=str(record.get('id') or name),
            name=name,
            contacts=tuple(contacts),
            domains=domains,
            notes_doc_id=record.get('notes_doc'),
            task_project_id=str(record['todoist_project']) if record.get('todoist_project') else None,
            base_label=base,
            summaries_label=labels.get('summaries') or f"{base}/Meeting Summaries",
            agendas_label=labels.get('agendas') or f"{base}/Meeting Agendas",
            setup_complete=bool(record.get('setup_complete', False)),
        )


class MatchMethod(str, Enum):
    EXACT_CONTACT = "exact_contact"
    DOMAIN = "domain"


@dataclass(frozen=True)
class MatchResult:
    client: Client
    method: MatchMethod


class ClientDirectory:
    """Read-only view over the client records, in file order."""

    def __init__(self, clients: list[Client]):
        self._clients = list(clients)

    @classmethod
    def from_yaml(cls, path: str | Path) -> 'ClientDirectory':
        path = Path(path)
        if not path.exists():
            logger.warning(f"Client directory not found: {path}")
            return cls([])

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        clients = []
        for record in data.get('clients') or []:
            if not isinstance(record, dict) or not record.get('name'):
                logger.warning(f"Skipping client record without a name: {record!r}")
                continue
            clients.append(Client.from_record(record))
        logger.info(f"Loaded {len(clients)} client(s) from {path}")
        return cls(clients)

    def list(self) -> list[Client]:
        return list(self._clients)

    def get(self, client_id: str) -> Client | None:
        for client in self._clients:
            if client.id == client_id:
                return client
        return None

    def by_label(self, label: str) -> Client | None:
        for client in self._clients:
            if label in (client.base_label, client.summaries_label, client.agendas_label):
                return client
        return None


class ClientMatcher:
    def __init__(self, directory: ClientDirectory):
        self.directory = directory

    def match(self, addresses) -> MatchResult | None:
        """Resolve candidate addresses to one client, or None."""
        candidates = [a for a in (normalize_address(raw) for raw in (addresses or [])) if a]
        if not candidates:
            return None

        clients = self.directory.list()

        for client in clients:
            for address in candidates:
                if address in client.contacts:
                    return MatchResult(client, MatchMethod.EXACT_CONTACT)

        for client in clients:
            for address in candidates:
                if address.split('@', 1)[1] in client.domains:
                    return MatchResult(client, MatchMethod.DOMAIN)

        return None
