"""
Helpers shared by the agenda and summary workflows.

- MeetingEvent: the one shape every inbound meeting is normalized into,
  whether it arrived by webhook or by polling the meetings API.
- Notes sections: delimited blocks appended to a client's notes document.
  Each append carries its own START/END markers, so the most recent complete
  section can always be located without reading the whole history.
- AI output cleanup: strip code fences and unwrap full HTML documents.
- resolve_client(): match + unmatched audit in one call.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime

from action_items import ActionItem
from client_matching import ClientMatcher, MatchResult, normalize_address

logger = logging.getLogger(__name__)

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

NOTES_START = re.compile(r'^=== MEETING NOTES START \| (.*?) \| (.*?) \| (.*?) ===[ \t]*$', re.MULTILINE)
NOTES_END = '=== MEETING NOTES END | {source_id} ==='
AGENDA_START = '=== AGENDA START | {title} | {date} | {event_id} ==='
AGENDA_END = '=== AGENDA END | {event_id} ==='

# Call and recording URLs carry the numeric recording id the meetings API uses
RECORDING_URL = re.compile(r'/(?:calls|recordings?)/(\d+)(?:[/?#]|$)')


@dataclass
class Participant:
    name: str | None
    email: str | None


@dataclass
class MeetingEvent:
    meeting_title: str
    meeting_date: str
    transcript: str = ''
    summary: str = ''
    action_items: list[ActionItem] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    fathom_url: str | None = None
    recording_id: str | None = None

    @property
    def emails(self) -> list[str]:
        return [p.email for p in self.participants if p.email]

    @property
    def key(self) -> str:
        """Stable id for ledger deduplication across webhook and poll.

        Both payload shapes resolve to the recording id when one is known,
        either given directly or parsed from the call URL.
        """
        if self.recording_id:
            return str(self.recording_id)
        if self.fathom_url:
            return normalize_meeting_url(self.fathom_url)
        digest = hashlib.sha1(f"{self.meeting_title}|{self.meeting_date}".encode('utf-8')).hexdigest()
        return digest[:16]


def normalize_meeting_url(url: str) -> str:
    """Lowercase scheme/host, drop query, fragment and trailing slash."""
    url = url.strip().split('#', 1)[0].split('?', 1)[0].rstrip('/')
    scheme, sep, rest = url.partition('://')
    if not sep:
        return url
    host, slash, path = rest.partition('/')
    return f"{scheme.lower()}://{host.lower()}{slash}{path}"


def recording_id_from_url(url) -> str | None:
    if not isinstance(url, str):
        return None
    match = RECORDING_URL.search(url)
    return match.group(1) if match else None


def _first(data: dict, *names, default=None):
    for name in names:
        value = data.get(name)
        if value not in (None, '', [], {}):
            return value
    return default


def _transcript_text(raw) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        raw = raw.get('segments') or raw.get('transcript') or raw.get('text') or []
        if isinstance(raw, str):
            return raw
    lines = []
    for segment in raw or []:
        if isinstance(segment, str):
            lines.append(segment)
            continue
        if not isinstance(segment, dict):
            continue
        speaker = segment.get('speaker')
        if isinstance(speaker, dict):
            speaker = speaker.get('display_name') or speaker.get('name')
        text = segment.get('text', '')
        stamp = segment.get('timestamp')
        prefix = f"[{stamp}] " if stamp else ''
        lines.append(f"{prefix}{speaker}: {text}" if speaker else f"{prefix}{text}")
    return '\n'.join(lines)


def _summary_text(raw) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return raw.get('markdown_formatted') or raw.get('text') or raw.get('summary') or ''
    if isinstance(raw, list):
        return '\n'.join(_summary_text(part) for part in raw)
    return ''


def normalize_meeting_payload(data: dict) -> MeetingEvent:
    """Normalize webhook / meetings API field-name variants into MeetingEvent.

    Raises ValueError if no title can be found.
    """
    title = _first(data, 'meeting_title', 'title', 'name')
    if not title:
        raise ValueError("Meeting payload has no title")

    date = _first(data, 'meeting_date', 'scheduled_start_time', 'recording_start_time', 'created_at',
                  default=datetime.now().astimezone().isoformat())

    participants = []
    raw_people = _first(data, 'participants', 'calendar_invitees', 'attendees', default=[])
    for person in raw_people:
        if isinstance(person, str):
            participants.append(Participant(name=None, email=normalize_address(person)))
        elif isinstance(person, dict):
            participants.append(Participant(
                name=person.get('name') or person.get('display_name'),
                email=normalize_address(person.get('email')),
            ))

    raw_items = _first(data, 'action_items', default=[])
    if not isinstance(raw_items, list):
        raw_items = []
    items = []
    for raw in raw_items:
        try:
            item = ActionItem.from_dict(raw)
        except ValueError as e:
            logger.warning(f"Skipping malformed action item in '{title}': {e}")
            continue
        if item:
            items.append(item)

    url = _first(data, 'fathom_url', 'url', 'share_url')
    recording_id = _first(data, 'recording_id')
    if recording_id is None:
        for name in ('fathom_url', 'url', 'share_url'):
            recording_id = recording_id_from_url(data.get(name))
            if recording_id:
                break

    return MeetingEvent(
        meeting_title=str(title).strip(),
        meeting_date=str(date),
        transcript=_transcript_text(_first(data, 'transcript', default='')),
        summary=_summary_text(_first(data, 'summary', 'default_summary', default='')),
        action_items=items,
        participants=participants,
        fathom_url=str(url) if url else None,
        recording_id=str(recording_id) if recording_id is not None else None,
    )


def clean_ai_content(text: str | None) -> str:
    """Strip code fences and reduce a full HTML document to its body."""
    if not text:
        return ''
    content = text.strip()

    fenced = re.match(r'^```[\w-]*\s*\n?(.*?)\n?```$', content, re.DOTALL)
    if fenced:
        content = fenced.group(1).strip()

    body = re.search(r'<body[^>]*>(.*?)</body>', content, re.DOTALL | re.IGNORECASE)
    if body:
        content = body.group(1).strip()
    elif re.match(r'^(<!DOCTYPE[^>]*>\s*)?<html', content, re.IGNORECASE):
        content = re.sub(r'^(<!DOCTYPE[^>]*>\s*)?<html[^>]*>', '', content, flags=re.IGNORECASE)
        content = re.sub(r'<head>.*?</head>', '', content, flags=re.DOTALL | re.IGNORECASE)
        content = re.sub(r'</html>\s*$', '', content, flags=re.IGNORECASE).strip()

    return content


def _one_line(value: str) -> str:
    return re.sub(r'\s+', ' ', (value or '').replace('|', '/')).strip()


def format_notes_section(title: str, date: str, source_id: str, body: str) -> str:
    start = f"=== MEETING NOTES START | {_one_line(title)} | {_one_line(date)} | {_one_line(source_id)} ==="
    end = NOTES_END.format(source_id=_one_line(source_id))
    return f"\n{start}\n{body.strip()}\n{end}\n"


def format_agenda_section(title: str, date: str, event_id: str, body: str) -> str:
    start = AGENDA_START.format(title=_one_line(title), date=_one_line(date), event_id=_one_line(event_id))
    end = AGENDA_END.format(event_id=_one_line(event_id))
    return f"\n{start}\n{body.strip()}\n{end}\n"


def latest_notes_section(document: str | None) -> str | None:
    """Return the body of the most recent complete meeting-notes section.

    A START marker without its matching END (e.g. an interrupted append) is
    skipped in favour of the previous complete section.
    """
    if not document:
        return None
    starts = list(NOTES_START.finditer(document))
    for start in reversed(starts):
        source_id = start.group(3)
        end_marker = NOTES_END.format(source_id=source_id)
        end_index = document.find(end_marker, start.end())
        if end_index == -1:
            continue
        next_start = NOTES_START.search(document, start.end())
        if next_start and next_start.start() < end_index:
            continue
        return document[start.end():end_index].strip()
    return None


def get_default_prompt_file(workspace_dir: str, name: str) -> str:
    """Return the prompt file path, preferring the workspace over the script directory."""
    workspace_prompt = os.path.join(workspace_dir, 'prompts', name)
    if os.path.exists(workspace_prompt):
        return workspace_prompt
    return os.path.join(SCRIPT_DIR, 'prompts', name)


def load_prompt_template(workspace_dir: str, name: str, default: str) -> str:
    """Load a prompt template by name, falling back to the built-in default."""
    prompt_file = get_default_prompt_file(workspace_dir, name)
    if not os.path.exists(prompt_file):
        return default
    with open(prompt_file, 'r', encoding='utf-8') as f:
        return f.read()


def resolve_client(matcher: ClientMatcher, unmatched_log, emails: list[str],
                   item_type: str, details: str) -> MatchResult | None:
    """Match `emails` to a client; write one audit row when nothing matches."""
    result = matcher.match(emails)
    if result is None:
        unmatched_log.record(item_type, details, emails)
        logger.info(f"No client match for {item_type} '{details}' ({', '.join(e for e in emails if e) or 'no addresses'})")
    else:
        logger.info(f"Matched {item_type} '{details}' to {result.client.name} via {result.method.value}")
    return result
