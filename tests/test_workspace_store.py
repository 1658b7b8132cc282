#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for workspace_store.py (file-backed collaborators)

Covers:
- OrgCalendar: entry parsing, all-day entries, window filtering
- NotesDirectory: read/append
- LocalMailbox: thread search, sent listing, labels, drafts, outbox
- YamlFilterStore: labels and filters persisted to YAML

Run with: uv run pytest tests/test_workspace_store.py -v
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from workspace_store import LocalMailbox, NotesDirectory, OrgCalendar, YamlFilterStore

UTC = timezone.utc

CALENDAR_ORG = """#+TITLE: Calendar

* Acme weekly sync <2026-10-19 Mon 10:00-11:00>
:PROPERTIES:
:ID: evt-acme
:PARTICIPANTS: Jane Doe <jane@acme.com>, bob@consult.example
:END:

* Company offsite <2026-10-20 Tue>
:PROPERTIES:
:ID: evt-offsite
:END:

* Globex kickoff <2026-10-21 Wed 14:30-15:00>
:PROPERTIES:
:PARTICIPANTS: hank@globex.io
:END:
"""


def _write_message(mailbox_dir: Path, **fields):
    mailbox_dir.mkdir(parents=True, exist_ok=True)
    (mailbox_dir / f"{fields['id']}.json").write_text(json.dumps(fields))


# ============================================================================
# OrgCalendar
# ============================================================================

class TestOrgCalendar:
    """Tests for OrgCalendar."""

    def test_parse(self, tmp_path):
        path = tmp_path / 'calendar.org'
        path.write_text(CALENDAR_ORG)
        events = OrgCalendar(path).parse()

        assert [e.title for e in events] == ['Acme weekly sync', 'Globex kickoff']
        acme = events[0]
        assert acme.id == 'evt-acme'
        assert acme.start == datetime(2026, 10, 19, 10, 0, tzinfo=UTC)
        assert acme.end == datetime(2026, 10, 19, 11, 0, tzinfo=UTC)
        assert acme.guests == ('jane@acme.com', 'bob@consult.example')

    def test_event_without_id_gets_stable_id(self, tmp_path):
        path = tmp_path / 'calendar.org'
        path.write_text(CALENDAR_ORG)
        first = OrgCalendar(path).parse()[1].id
        second = OrgCalendar(path).parse()[1].id
        assert first == second
        assert '2026-10-21' in first

    def test_timezone(self, tmp_path):
        path = tmp_path / 'calendar.org'
        path.write_text(CALENDAR_ORG)
        event = OrgCalendar(path, tz='America/New_York').parse()[0]
        assert event.start.astimezone(UTC).hour == 14

    def test_list_events_window(self, tmp_path):
        path = tmp_path / 'calendar.org'
        path.write_text(CALENDAR_ORG)
        start = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
        events = OrgCalendar(path).list_events(start, start + timedelta(hours=24))
        assert [e.id for e in events] == ['evt-acme']

    def test_missing_file(self, tmp_path):
        assert OrgCalendar(tmp_path / 'nope.org').parse() == []


# ============================================================================
# NotesDirectory
# ============================================================================

class TestNotesDirectory:
    """Tests for NotesDirectory."""

    def test_read_missing_doc(self, tmp_path):
        assert NotesDirectory(tmp_path / 'notes').read('acme-notes') == ''

    def test_append_accumulates(self, tmp_path):
        notes = NotesDirectory(tmp_path / 'notes')
        notes.append('acme-notes', 'one\n')
        notes.append('acme-notes', 'two\n')
        assert notes.read('acme-notes') == 'one\ntwo\n'
        assert (tmp_path / 'notes' / 'acme-notes.md').exists()

    def test_doc_id_is_sanitized(self, tmp_path):
        notes = NotesDirectory(tmp_path / 'notes')
        notes.append('../../etc/passwd', 'x')
        assert [p.name for p in (tmp_path / 'notes').iterdir()] == ['etc-passwd.md']


# ============================================================================
# LocalMailbox
# ============================================================================

@pytest.fixture
def mailbox(tmp_path):
    mailbox_dir = tmp_path / 'mailbox'
    _write_message(mailbox_dir, id='m1', thread_id='t1', **{'from': 'me@consult.example'},
                   to=['Jane <jane@acme.com>'], subject='Summary: Acme sync', body='Action Items\n1. Send deck',
                   date='2026-10-19T12:00:00Z', labels=['Client: Acme'])
    _write_message(mailbox_dir, id='m2', thread_id='t1', **{'from': 'jane@acme.com'},
                   to='me@consult.example', subject='Re: Summary: Acme sync', body='Thanks',
                   date='2026-10-19T13:00:00Z', labels=['Client: Acme'])
    _write_message(mailbox_dir, id='m3', thread_id='t2', **{'from': 'hank@globex.io'},
                   to=['me@consult.example'], subject='Contract', body='See attached',
                   date='2026-10-18T08:00:00Z')
    (mailbox_dir / 'broken.json').write_text('{not json')
    return LocalMailbox(tmp_path, 'Me@Consult.Example')


class TestLocalMailbox:
    """Tests for LocalMailbox."""

    def test_search_returns_latest_per_thread(self, mailbox):
        since = datetime(2026, 10, 1, tzinfo=UTC)
        results = mailbox.search_messages(['jane@acme.com'], [], since)
        assert [m.id for m in results] == ['m2']

    def test_search_by_domain(self, mailbox):
        since = datetime(2026, 10, 1, tzinfo=UTC)
        results = mailbox.search_messages([], ['globex.io'], since)
        assert [m.id for m in results] == ['m3']

    def test_search_respects_since_and_cap(self, mailbox):
        assert mailbox.search_messages([], ['globex.io'], datetime(2026, 10, 19, tzinfo=UTC)) == []
        results = mailbox.search_messages(['me@consult.example'], [], datetime(2026, 10, 1, tzinfo=UTC), max_threads=1)
        assert len(results) == 1

    def test_list_sent(self, mailbox):
        sent = mailbox.list_sent('Client: Acme', datetime(2026, 10, 19, tzinfo=UTC))
        assert [m.id for m in sent] == ['m1']
        assert sent[0].first_in_thread is True
        assert sent[0].to == ['jane@acme.com']

    def test_first_in_thread(self, mailbox):
        messages = {m.id: m for m in mailbox.search_messages(['jane@acme.com', 'me@consult.example'], [],
                                                             datetime(2026, 10, 1, tzinfo=UTC))}
        assert messages['m2'].first_in_thread is False

    def test_add_label(self, mailbox, tmp_path):
        mailbox.add_label('m1', 'Client: Acme/Meeting Summaries')
        mailbox.add_label('m1', 'Client: Acme/Meeting Summaries')
        raw = json.loads((tmp_path / 'mailbox' / 'm1.json').read_text())
        assert raw['labels'] == ['Client: Acme', 'Client: Acme/Meeting Summaries']

    def test_add_label_unknown_message(self, mailbox):
        with pytest.raises(KeyError):
            mailbox.add_label('missing', 'x')

    def test_send_email_writes_outbox(self, mailbox, tmp_path):
        message_id = mailbox.send_email(['me@consult.example'], 'Agenda: Acme sync', '<p>hi</p>')
        raw = json.loads((tmp_path / 'outbox' / f'{message_id}.json').read_text())
        assert raw['subject'] == 'Agenda: Acme sync'
        assert raw['html_body'] == '<p>hi</p>'
        assert raw['from'] == 'me@consult.example'

    def test_drafts(self, mailbox, tmp_path):
        draft_id = mailbox.create_draft(['jane@acme.com'], 'Summary: Acme sync', 'body')
        assert mailbox.draft_exists(draft_id)
        (tmp_path / 'drafts' / f'{draft_id}.json').unlink()
        assert not mailbox.draft_exists(draft_id)


# ============================================================================
# YamlFilterStore
# ============================================================================

class TestYamlFilterStore:
    """Tests for YamlFilterStore."""

    def test_empty_store(self, tmp_path):
        store = YamlFilterStore(tmp_path / 'mail_filters.yaml')
        assert store.list_filters() == []
        assert store.list_labels() == {}

    def test_create_label_is_idempotent(self, tmp_path):
        store = YamlFilterStore(tmp_path / 'mail_filters.yaml')
        first = store.create_label('Client: Acme')
        assert store.create_label('Client: Acme') == first
        assert store.list_labels() == {first: 'Client: Acme'}

    def test_filters_persist(self, tmp_path):
        path = tmp_path / 'mail_filters.yaml'
        label_id = YamlFilterStore(path).create_label('Client: Acme')
        filter_id = YamlFilterStore(path).create_filter({'from': '@acme.com'}, [label_id])

        reopened = YamlFilterStore(path)
        resource = reopened.get_filter(filter_id)
        assert resource.label_ids == [label_id]
        assert resource.criteria == {'from': '@acme.com'}

        reopened.delete_filter(filter_id)
        reopened.delete_label(label_id)
        assert reopened.get_filter(filter_id) is None
        assert reopened.list_labels() == {}
