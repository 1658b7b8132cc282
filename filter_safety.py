"""
Safety gate for automated changes to mailbox labels and filters.

The mailbox configuration is shared with a human who edits it by hand, so
the automation may only touch what it owns. A filter is system-owned iff
one of its target labels is a client label ("Client: <name>", including
sub-labels such as "Client: <name>/Meeting Summaries") or one of the
configured briefing labels. Anything that cannot be resolved is foreign.

Ownership is re-evaluated against the store right before every mutation;
nothing about a resource is cached between listing it and acting on it.
"""

import logging
import re
from dataclasses import dataclass, field

from client_matching import Client
from workflow_errors import SafetyViolation
from workspace_store import FilterResource, FilterStore

logger = logging.getLogger(__name__)

CLIENT_LABEL_PATTERN = re.compile(r'^Client: .+')


def is_client_label(name: str | None) -> bool:
    return bool(name) and bool(CLIENT_LABEL_PATTERN.match(name))


def client_filter_criteria(client: Client) -> dict:
    terms = list(client.contacts) + [f"@{domain}" for domain in sorted(client.domains)]
    return {'from': ' OR '.join(terms)}


@dataclass
class SyncReport:
    created_labels: list[str] = field(default_factory=list)
    created_filters: list[str] = field(default_factory=list)
    deleted_filters: list[str] = field(default_factory=list)
    refused: list[str] = field(default_factory=list)


class FilterSafetyGuard:
    def __init__(self, store: FilterStore, briefing_labels=(), processing_log=None):
        self.store = store
        self.briefing_labels = frozenset(label for label in briefing_labels if label)
        self.processing_log = processing_log

    def is_system_label(self, name: str | None) -> bool:
        return is_client_label(name) or (name in self.briefing_labels)

    def label_names(self, resource: FilterResource) -> list[str] | None:
        """Resolve the resource's label ids to names. None if any cannot be resolved."""
        try:
            labels = self.store.list_labels()
        except Exception as e:
            logger.warning(f"Label lookup failed for filter {resource.id}: {e}")
            return None
        names = []
        for label_id in resource.label_ids:
            name = labels.get(label_id)
            if name is None:
                logger.warning(f"Filter {resource.id} targets unknown label id {label_id}")
                return None
            names.append(name)
        return names

    def is_system_owned(self, resource: FilterResource | None) -> bool:
        if resource is None or not resource.label_ids:
            return False
        names = self.label_names(resource)
        if names is None:
            return False
        return any(self.is_system_label(name) for name in names)

    def _refuse(self, action: str, target: str, reason: str) -> bool:
        violation = SafetyViolation(f"Refused to {action} {target}: {reason}")
        logger.warning(str(violation))
        if self.processing_log is not None:
            self.processing_log.record(f'filter_{action}', None, str(violation), status='warning')
        return False

    def delete_filter(self, filter_id: str) -> bool:
        """Delete a filter only if it is system-owned right now."""
        try:
            current = self.store.get_filter(filter_id)
        except Exception as e:
            return self._refuse('delete', f"filter {filter_id}", f"lookup failed: {e}")
        if current is None:
            return self._refuse('delete', f"filter {filter_id}", "filter not found")
        if not self.is_system_owned(current):
            return self._refuse('delete', f"filter {filter_id}", "filter is not system-owned")

        self.store.delete_filter(filter_id)
        logger.info(f"Deleted system-owned filter {filter_id}")
        return True

    def ensure_label(self, name: str) -> str | None:
        if not self.is_system_label(name):
            self._refuse('create', f"label '{name}'", "label name is not system-owned")
            return None
        return self.store.create_label(name)

    def create_filter(self, criteria: dict, label_name: str) -> str | None:
        label_id = self.ensure_label(label_name)
        if label_id is None:
            return None
        filter_id = self.store.create_filter(criteria, [label_id])
        logger.info(f"Created filter {filter_id} -> '{label_name}'")
        return filter_id

    def replace_filter(self, filter_id: str, criteria: dict, label_name: str) -> str | None:
        if not self.is_system_label(label_name):
            self._refuse('replace', f"filter {filter_id}", f"new label '{label_name}' is not system-owned")
            return None
        if not self.delete_filter(filter_id):
            return None
        return self.create_filter(criteria, label_name)

    def delete_label(self, name: str) -> bool:
        if not self.is_system_label(name):
            return self._refuse('delete', f"label '{name}'", "label is not system-owned")
        try:
            labels = self.store.list_labels()
        except Exception as e:
            return self._refuse('delete', f"label '{name}'", f"lookup failed: {e}")
        label_id = next((lid for lid, lname in labels.items() if lname == name), None)
        if label_id is None:
            return self._refuse('delete', f"label '{name}'", "label not found")
        self.store.delete_label(label_id)
        logger.info(f"Deleted system-owned label '{name}'")
        return True

    def sync_client_filters(self, clients: list[Client]) -> SyncReport:
        """Make client labels and routing filters match the directory.

        Only clients with setup_complete participate. A client filter is
        removed through delete_filter() when its label belongs to no client in
        the directory, or when a set-up client now routes with other criteria.
        Filters of clients still being set up (or with nothing to route on)
        are left alone, as are briefing and foreign filters.
        """
        report = SyncReport()
        existing_labels = set(self.store.list_labels().values())

        known = {client.base_label for client in clients}
        desired = {}
        for client in clients:
            if not client.setup_complete:
                continue
            for label in (client.base_label, client.summaries_label, client.agendas_label):
                if label not in existing_labels:
                    if self.ensure_label(label) is None:
                        report.refused.append(label)
                        continue
                    existing_labels.add(label)
                    report.created_labels.append(label)
            if client.contacts or client.domains:
                desired[client.base_label] = client_filter_criteria(client)

        satisfied = set()
        for resource in self.store.list_filters():
            names = self.label_names(resource)
            routing = [name for name in (names or []) if is_client_label(name) and '/' not in name]
            if not routing:
                continue
            target = routing[0]
            if target in known and target not in desired:
                logger.debug(f"Leaving filter {resource.id} for {target}: client has no managed routing")
                continue
            if desired.get(target) == resource.criteria and target not in satisfied:
                satisfied.add(target)
                continue
            if self.delete_filter(resource.id):
                report.deleted_filters.append(resource.id)
            else:
                report.refused.append(resource.id)

        for label, criteria in desired.items():
            if label in satisfied:
                continue
            filter_id = self.create_filter(criteria, label)
            if filter_id:
                report.created_filters.append(filter_id)

        logger.info(
            f"Filter sync: {len(report.created_labels)} label(s) created, "
            f"{len(report.created_filters)} filter(s) created, {len(report.deleted_filters)} deleted"
        )
        return report
