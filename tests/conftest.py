"""
Shared fixtures and in-memory collaborators for the consultflow tests.

The fakes record every call so tests can assert on side effects (emails
sent, drafts created, notes appended, tasks created) without touching any
external service.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from action_items import Task
from client_matching import Client, ClientDirectory, ClientMatcher
from consultflow_config import Settings
from idempotency_ledger import ExpiringCache, IdempotencyLedger, ProcessingLog, SqliteLedgerStore, UnmatchedLog
from workflow_errors import ExternalServiceError
from workspace_store import FilterResource

OWNER = 'me@consult.example'

# Monday morning, inside default business hours
MONDAY_9AM = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class FakeCalendar:
    def __init__(self, events=None):
        self.events = list(events or [])

    def list_events(self, start, end):
        return [e for e in self.events if start <= e.start < end]


class FakeDocuments:
    def __init__(self, docs=None):
        self.docs = dict(docs or {})
        self.appends = []

    def read(self, doc_id):
        return self.docs.get(doc_id, '')

    def append(self, doc_id, text):
        self.appends.append((doc_id, text))
        self.docs[doc_id] = self.docs.get(doc_id, '') + text


class FakeMail:
    def __init__(self, threads=None, sent=None):
        self.threads = list(threads or [])
        self.sent_messages = list(sent or [])
        self.emails = []
        self.drafts = {}
        self.labels_added = []
        self.fail_add_label = 0

    def search_messages(self, addresses, domains, since, max_threads=20):
        return self.threads[:max_threads]

    def send_email(self, to, subject, html_body):
        self.emails.append({'to': list(to), 'subject': subject, 'body': html_body})
        return f"out-{len(self.emails)}"

    def create_draft(self, to, subject, body):
        draft_id = f"draft-{len(self.drafts) + 1}"
        self.drafts[draft_id] = {'to': list(to), 'subject': subject, 'body': body}
        return draft_id

    def draft_exists(self, draft_id):
        return draft_id in self.drafts

    def list_sent(self, label, since):
        return [m for m in self.sent_messages if label in m.labels and m.date >= since]

    def add_label(self, message_id, label):
        if self.fail_add_label:
            self.fail_add_label -= 1
            raise ExternalServiceError('mail', "label service unavailable", 503)
        self.labels_added.append((message_id, label))


class FakeTasks:
    def __init__(self, tasks=None, collaborators=None):
        self.tasks = list(tasks or [])
        self.collaborators = list(collaborators or [])
        self.created = []

    def list_tasks(self, project_id):
        return list(self.tasks)

    def list_collaborators(self, project_id):
        return list(self.collaborators)

    def create_task(self, project_id, item, assignee_id=None, description=None):
        task = Task(id=f"t{len(self.created) + 1}", content=item.description,
                    due_date=item.due_date, assignee_id=assignee_id)
        self.created.append({'project_id': project_id, 'item': item, 'assignee_id': assignee_id,
                             'description': description, 'task': task})
        return task


class FakeAI:
    def __init__(self, responses=None, available=True):
        self.responses = list(responses or [])
        self.available = available
        self.prompts = []

    def complete(self, prompt, system=None):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class FakeFilterStore:
    def __init__(self, labels=None, filters=None):
        self.labels = dict(labels or {})
        self.filters = {f.id: f for f in (filters or [])}
        self.deleted_filters = []
        self.deleted_labels = []
        self.fail_labels = False

    def list_filters(self):
        return list(self.filters.values())

    def get_filter(self, filter_id):
        return self.filters.get(filter_id)

    def create_filter(self, criteria, label_ids):
        filter_id = f"f{len(self.filters) + len(self.deleted_filters) + 1}"
        self.filters[filter_id] = FilterResource(filter_id, list(label_ids), dict(criteria))
        return filter_id

    def delete_filter(self, filter_id):
        self.deleted_filters.append(filter_id)
        self.filters.pop(filter_id, None)

    def list_labels(self):
        if self.fail_labels:
            raise ExternalServiceError('mail', "labels unavailable", 500)
        return dict(self.labels)

    def create_label(self, name):
        for label_id, label_name in self.labels.items():
            if label_name == name:
                return label_id
        label_id = f"L{len(self.labels) + 1}"
        self.labels[label_id] = name
        return label_id

    def delete_label(self, label_id):
        self.deleted_labels.append(label_id)
        self.labels.pop(label_id, None)


@pytest.fixture
def acme():
    return Client.from_record({
        'id': 'acme',
        'name': 'Acme',
        'contacts': ['Jane@Acme.com'],
        'domains': ['acme.com'],
        'notes_doc': 'acme-notes',
        'todoist_project': '2203',
        'setup_complete': True,
    })


@pytest.fixture
def globex():
    return Client.from_record({
        'id': 'globex',
        'name': 'Globex',
        'contacts': ['hank@globex.io', 'jane@acme.com'],
        'domains': ['globex.io'],
        'notes_doc': 'globex-notes',
        'todoist_project': '3301',
        'setup_complete': False,
    })


@pytest.fixture
def directory(acme, globex):
    return ClientDirectory([acme, globex])


@pytest.fixture
def matcher(directory):
    return ClientMatcher(directory)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_repo=str(tmp_path),
        owner_email=OWNER,
        anthropic_api_key='test-anthropic-key',
        todoist_api_token='test-todoist-token',
        fathom_api_key='test-fathom-key',
    )


@pytest.fixture
def store(tmp_path):
    return SqliteLedgerStore(tmp_path / 'ledger.sqlite3')


@pytest.fixture
def ledger(store):
    return IdempotencyLedger(store, ExpiringCache(capacity=100, default_ttl=3600))


@pytest.fixture
def processing_log(store):
    return ProcessingLog(store)


@pytest.fixture
def unmatched_log(store):
    return UnmatchedLog(store)
