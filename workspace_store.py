"""
Collaborator interfaces and their local, file-backed implementations.

The workflows only talk to these protocols. The local implementations keep
everything inside the data repository so the whole system can run (and be
inspected with git) without any hosted mail or calendar account:

    {data_repo}/
      clients.yaml          client directory
      calendar.org          upcoming meetings (org-mode)
      notes/<doc>.md        per-client notes documents
      mailbox/*.json        mail messages (received and sent)
      outbox/*.json         emails sent by the workflows
      drafts/*.json         drafts created from meeting webhooks
      mail_filters.yaml     labels and filter rules
      ledger.sqlite3        idempotency ledger

calendar.org entries look like:

    * Acme weekly sync <2026-10-19 Mon 10:00-11:00>
    :PROPERTIES:
    :ID: evt-2026-10-19-acme
    :PARTICIPANTS: Jane Doe <jane@acme.com>, bob@acme.com
    :END:
"""

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol
from zoneinfo import ZoneInfo

import yaml

from client_matching import extract_addresses, normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    guests: tuple[str, ...] = ()


@dataclass
class EmailMessage:
    id: str
    thread_id: str
    sender: str
    to: list[str]
    subject: str
    body: str
    date: datetime
    labels: list[str] = field(default_factory=list)
    first_in_thread: bool = True


@dataclass
class FilterResource:
    id: str
    label_ids: list[str]
    criteria: dict = field(default_factory=dict)


class CalendarService(Protocol):
    def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]: ...


class DocumentService(Protocol):
    def read(self, doc_id: str) -> str: ...

    def append(self, doc_id: str, text: str) -> None: ...


class MailService(Protocol):
    def search_messages(self, addresses: list[str], domains: list[str], since: datetime,
                        max_threads: int) -> list[EmailMessage]: ...

    def send_email(self, to: list[str], subject: str, html_body: str) -> str: ...

    def create_draft(self, to: list[str], subject: str, body: str) -> str: ...

    def draft_exists(self, draft_id: str) -> bool: ...

    def list_sent(self, label: str, since: datetime) -> list[EmailMessage]: ...

    def add_label(self, message_id: str, label: str) -> None: ...


class FilterStore(Protocol):
    def list_filters(self) -> list[FilterResource]: ...

    def get_filter(self, filter_id: str) -> FilterResource | None: ...

    def create_filter(self, criteria: dict, label_ids: list[str]) -> str: ...

    def delete_filter(self, filter_id: str) -> None: ...

    def list_labels(self) -> dict[str, str]: ...

    def create_label(self, name: str) -> str: ...

    def delete_label(self, label_id: str) -> None: ...


def _write_json_atomic(path: Path, data: dict) -> None:
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, default=str)
    os.replace(tmp_path, path)


def _parse_datetime(value, tz) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


class OrgCalendar:
    """Calendar backed by an org-mode file."""

    ENTRY_PATTERN = re.compile(
        r'^\* (.+?) <(\d{4}-\d{2}-\d{2}) \w{3}(?: (\d{2}:\d{2})-(\d{2}:\d{2}))?>\s*\n(.*?)(?=^\* |\Z)',
        re.MULTILINE | re.DOTALL
    )

    def __init__(self, calendar_path: str | Path, tz: str = 'UTC'):
        self.calendar_path = Path(calendar_path)
        self.tz = ZoneInfo(tz)

    def parse(self) -> list[CalendarEvent]:
        if not self.calendar_path.exists():
            logger.warning(f"Calendar file not found: {self.calendar_path}")
            return []

        with open(self.calendar_path, 'r', encoding='utf-8') as f:
            content = f.read()

        events = []
        for match in self.ENTRY_PATTERN.finditer(content):
            title = match.group(1).strip()
            date_str = match.group(2)
            start_time = match.group(3)
            end_time = match.group(4)
            body = match.group(5)

            # All-day entries never get agendas
            if not start_time:
                continue

            id_match = re.search(r':ID:\s*(.+?)(?:\n|$)', body)
            participants_match = re.search(r':PARTICIPANTS:\s*(.+?)(?:\n|$)', body)
            guests = tuple(extract_addresses(participants_match.group(1))) if participants_match else ()

            start = datetime.fromisoformat(f"{date_str}T{start_time}").replace(tzinfo=self.tz)
            end = datetime.fromisoformat(f"{date_str}T{end_time}").replace(tzinfo=self.tz)
            if end <= start:
                end += timedelta(days=1)

            event_id = id_match.group(1).strip() if id_match else f"{date_str}-{start_time}-{title}"
            events.append(CalendarEvent(id=event_id, title=title, start=start, end=end, guests=guests))
        return events

    def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        events = [e for e in self.parse() if start <= e.start < end]
        return sorted(events, key=lambda e: e.start)


class NotesDirectory:
    """Notes documents as markdown files under notes/."""

    def __init__(self, notes_dir: str | Path):
        self.notes_dir = Path(notes_dir)

    def _path(self, doc_id: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9._-]', '-', doc_id).strip('.-') or 'untitled'
        return self.notes_dir / f"{safe}.md"

    def read(self, doc_id: str) -> str:
        path = self._path(doc_id)
        if not path.exists():
            return ''
        return path.read_text(encoding='utf-8')

    def append(self, doc_id: str, text: str) -> None:
        self.notes_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(doc_id)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(text)
        logger.info(f"Appended {len(text)} chars to {path}")


class LocalMailbox:
    """Mailbox backed by JSON files in the data repository."""

    def __init__(self, repo_dir: str | Path, owner_email: str | None, tz: str = 'UTC'):
        repo = Path(repo_dir)
        self.mailbox_dir = repo / 'mailbox'
        self.outbox_dir = repo / 'outbox'
        self.drafts_dir = repo / 'drafts'
        self.owner_email = normalize_address(owner_email)
        self.tz = ZoneInfo(tz)

    def _message_files(self) -> list[Path]:
        if not self.mailbox_dir.exists():
            return []
        return sorted(self.mailbox_dir.glob('*.json'))

    def _load(self, path: Path) -> EmailMessage | None:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            return EmailMessage(
                id=str(raw['id']),
                thread_id=str(raw.get('thread_id') or raw['id']),
                sender=(extract_addresses(raw.get('from', '')) or [''])[0],
                to=extract_addresses(', '.join(raw.get('to', [])) if isinstance(raw.get('to'), list) else raw.get('to', '')),
                subject=raw.get('subject', ''),
                body=raw.get('body', ''),
                date=_parse_datetime(raw['date'], self.tz),
                labels=list(raw.get('labels') or []),
            )
        except (OSError, KeyError, ValueError) as e:
            logger.warning(f"Skipping unreadable message {path.name}: {e}")
            return None

    def _messages(self) -> list[EmailMessage]:
        messages = [m for m in (self._load(p) for p in self._message_files()) if m]
        first_by_thread: dict[str, EmailMessage] = {}
        for message in sorted(messages, key=lambda m: m.date):
            first_by_thread.setdefault(message.thread_id, message)
        for message in messages:
            message.first_in_thread = first_by_thread[message.thread_id].id == message.id
        return messages

    def search_messages(self, addresses: list[str], domains: list[str], since: datetime,
                        max_threads: int = 20) -> list[EmailMessage]:
        """Latest message of each thread involving the addresses or domains."""
        addresses = {a.lower() for a in addresses}
        domains = {d.lower() for d in domains}

        def involves(message: EmailMessage) -> bool:
            for address in [message.sender, *message.to]:
                if address in addresses or address.split('@')[-1] in domains:
                    return True
            return False

        latest: dict[str, EmailMessage] = {}
        for message in self._messages():
            if message.date < since or not involves(message):
                continue
            current = latest.get(message.thread_id)
            if current is None or message.date > current.date:
                latest[message.thread_id] = message
        threads = sorted(latest.values(), key=lambda m: m.date, reverse=True)
        return threads[:max_threads]

    def send_email(self, to: list[str], subject: str, html_body: str) -> str:
        self.outbox_dir.mkdir(parents=True, exist_ok=True)
        message_id = f"out-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
        _write_json_atomic(self.outbox_dir / f"{message_id}.json", {
            'id': message_id,
            'from': self.owner_email,
            'to': to,
            'subject': subject,
            'html_body': html_body,
            'date': datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"Sent email '{subject}' to {', '.join(to)} ({message_id})")
        return message_id

    def create_draft(self, to: list[str], subject: str, body: str) -> str:
        self.drafts_dir.mkdir(parents=True, exist_ok=True)
        draft_id = f"draft-{uuid.uuid4().hex[:12]}"
        _write_json_atomic(self.drafts_dir / f"{draft_id}.json", {
            'id': draft_id,
            'to': to,
            'subject': subject,
            'body': body,
            'created_at': datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"Created draft '{subject}' ({draft_id})")
        return draft_id

    def draft_exists(self, draft_id: str) -> bool:
        return (self.drafts_dir / f"{draft_id}.json").exists()

    def list_sent(self, label: str, since: datetime) -> list[EmailMessage]:
        return [
            m for m in sorted(self._messages(), key=lambda m: m.date)
            if m.sender == self.owner_email and label in m.labels and m.date >= since
        ]

    def add_label(self, message_id: str, label: str) -> None:
        for path in self._message_files():
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if str(raw.get('id')) != message_id:
                continue
            labels = list(raw.get('labels') or [])
            if label not in labels:
                labels.append(label)
                raw['labels'] = labels
                _write_json_atomic(path, raw)
            return
        raise KeyError(f"Message not found: {message_id}")


class YamlFilterStore:
    """Labels and filter rules kept in mail_filters.yaml.

        labels:
          - {id: Label_1, name: "Client: Acme"}
        filters:
          - {id: f1, criteria: {from: "jane@acme.com OR @acme.com"}, label_ids: [Label_1]}
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {'labels': [], 'filters': []}
        with open(self.path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        data.setdefault('labels', [])
        data.setdefault('filters', [])
        return data

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix('.yaml.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
        os.replace(tmp_path, self.path)

    def list_filters(self) -> list[FilterResource]:
        return [
            FilterResource(id=str(f['id']), label_ids=[str(i) for i in f.get('label_ids') or []],
                           criteria=dict(f.get('criteria') or {}))
            for f in self._read()['filters']
        ]

    def get_filter(self, filter_id: str) -> FilterResource | None:
        for resource in self.list_filters():
            if resource.id == filter_id:
                return resource
        return None

    def create_filter(self, criteria: dict, label_ids: list[str]) -> str:
        data = self._read()
        filter_id = f"filter-{uuid.uuid4().hex[:10]}"
        data['filters'].append({'id': filter_id, 'criteria': dict(criteria), 'label_ids': list(label_ids)})
        self._write(data)
        return filter_id

    def delete_filter(self, filter_id: str) -> None:
        data = self._read()
        data['filters'] = [f for f in data['filters'] if str(f['id']) != filter_id]
        self._write(data)

    def list_labels(self) -> dict[str, str]:
        return {str(label['id']): label['name'] for label in self._read()['labels']}

    def create_label(self, name: str) -> str:
        data = self._read()
        for label in data['labels']:
            if label['name'] == name:
                return str(label['id'])
        label_id = f"Label_{uuid.uuid4().hex[:10]}"
        data['labels'].append({'id': label_id, 'name': name})
        self._write(data)
        return label_id

    def delete_label(self, label_id: str) -> None:
        data = self._read()
        data['labels'] = [label for label in data['labels'] if str(label['id']) != label_id]
        self._write(data)
