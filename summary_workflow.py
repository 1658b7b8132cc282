"""
Meeting intake and sent-summary processing.

Two halves of the same loop:

1. MeetingIntake turns a finished meeting (webhook push or meetings API
   poll) into an email draft for the owner to review and send. Both entry
   points dedupe on the processed-meeting ledger namespace, so a meeting
   delivered by webhook and then seen again by the poll is drafted once.

2. SummaryWorkflow picks up summary emails the owner actually sent (first
   message of a thread carrying a client's base label) and turns them into
   tracker tasks, an appended notes section and a summaries label:

    DETECTED -> DEDUPLICATED
    DETECTED -> CLIENT_IDENTIFIED -> ITEMS_EXTRACTED -> TASKS_CREATED
             -> NOTES_APPENDED -> LABELED -> RECORDED
    any step -> FAILED

   processed-message is marked only after every step has succeeded. Each
   task is guarded by its own created-task key, so a retry after a partial
   failure does not duplicate the tasks that were already created.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from action_items import ActionItem, parse_action_items, parse_ai_action_items
from client_matching import Client, normalize_address
from idempotency_ledger import CREATED_TASK, PENDING_DRAFT, PROCESSED_MEETING, PROCESSED_MESSAGE, LedgerKey
from meeting_notes import MeetingEvent, clean_ai_content, format_notes_section, load_prompt_template, resolve_client
from workflow_errors import ConfigurationError, ExternalServiceError
from workspace_store import EmailMessage

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 60000

DEFAULT_SUMMARY_EMAIL_PROMPT = """Write a follow-up email summarizing this meeting for its participants.

Meeting: {title}
Date: {date}

## Meeting summary
{summary}

## Action items already identified
{action_items}

## Transcript
{transcript}

Write plain text only (no markdown code fences). Start with a one-line
greeting, then a short "Summary" section, then an "Action Items" section as
a numbered list. End each action item with "(Owner: <name>)" when someone
owns it and "(due YYYY-MM-DD)" when a date was agreed."""

DEFAULT_EXTRACTION_PROMPT = """Extract the action items from this meeting summary email.

Subject: {subject}

{body}

Return ONLY a JSON array. Each element must be an object with the keys
"description" (string), "assignee" (string or null) and "due_date"
(YYYY-MM-DD or null). Return [] if there are no action items."""


class SummaryState(str, Enum):
    DETECTED = "detected"
    DEDUPLICATED = "deduplicated"
    CLIENT_IDENTIFIED = "client_identified"
    ITEMS_EXTRACTED = "items_extracted"
    TASKS_CREATED = "tasks_created"
    NOTES_APPENDED = "notes_appended"
    LABELED = "labeled"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass
class SummaryOutcome:
    message_id: str
    subject: str
    state: SummaryState = SummaryState.DETECTED
    client: str | None = None
    items: list[ActionItem] = field(default_factory=list)
    created_tasks: list[str] = field(default_factory=list)
    error: str | None = None
    history: list[SummaryState] = field(default_factory=list)

    def advance(self, state: SummaryState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class IntakeOutcome:
    meeting_key: str
    status: str
    client: str | None = None
    draft_id: str | None = None
    error: str | None = None


def item_digest(item: ActionItem) -> str:
    normalized = ' '.join(item.description.lower().split())
    return hashlib.sha1(normalized.encode('utf-8')).hexdigest()[:12]


def format_action_item(item: ActionItem) -> str:
    text = item.description
    if item.assignee:
        text += f" (Owner: {item.assignee})"
    if item.due_date:
        text += f" (due {item.due_date})"
    return text


def format_action_items(items: list[ActionItem]) -> str:
    if not items:
        return "None identified."
    return '\n'.join(f"{i}. {format_action_item(item)}" for i, item in enumerate(items, 1))


def find_collaborator(item: ActionItem, collaborators: list[dict]) -> str | None:
    """Resolve an item's assignee to a project collaborator id (email, then name)."""
    email = normalize_address(item.assignee_email)
    if email:
        for person in collaborators:
            if normalize_address(person.get('email')) == email:
                return str(person['id'])
    if not item.assignee:
        return None
    wanted = item.assignee.strip().lower()
    for person in collaborators:
        name = (person.get('name') or '').strip().lower()
        if name and (name == wanted or name.split()[0] == wanted):
            return str(person['id'])
    return None


class MeetingIntake:
    def __init__(self, settings, matcher, ledger, processing_log, unmatched_log, mail,
                 ai=None, meetings_api=None):
        self.settings = settings
        self.matcher = matcher
        self.ledger = ledger
        self.processing_log = processing_log
        self.unmatched_log = unmatched_log
        self.mail = mail
        self.ai = ai
        self.meetings_api = meetings_api
        self.prompt_template = load_prompt_template(
            settings.prompt_dir or settings.data_repo, 'summary_email.txt', DEFAULT_SUMMARY_EMAIL_PROMPT
        )

    def handle_meeting(self, meeting: MeetingEvent) -> IntakeOutcome:
        """Draft a summary email for `meeting` unless it was already drafted.

        Failures are written to the processing log here, for both the webhook
        and the poll, then re-raised to the caller.
        """
        key = LedgerKey(PROCESSED_MEETING, meeting.key)
        if self.ledger.has_processed(key):
            logger.info(f"Meeting '{meeting.meeting_title}' ({meeting.key}) already processed, skipping")
            return IntakeOutcome(meeting.key, 'duplicate')

        client = None
        try:
            match = resolve_client(self.matcher, self.unmatched_log, meeting.emails, 'meeting',
                                   f"{meeting.meeting_title} ({meeting.meeting_date})")
            client = match.client.name if match else None

            body = self.compose_summary_email(meeting)
            owner = normalize_address(self.settings.owner_email)
            recipients = [e for e in meeting.emails if normalize_address(e) != owner]
            subject = f"Summary: {meeting.meeting_title}"

            if self.ledger.has_processed_durable(key):
                return IntakeOutcome(meeting.key, 'duplicate', client=client)

            draft_id = self.mail.create_draft(recipients, subject, body)
            self.ledger.mark_pending(LedgerKey(PENDING_DRAFT, draft_id), client=client,
                                     metadata={'title': meeting.meeting_title, 'meeting': meeting.key})
            self.ledger.mark_processed(key, client=client, metadata={
                'title': meeting.meeting_title,
                'date': meeting.meeting_date,
                'draft_id': draft_id,
                'fathom_url': meeting.fathom_url,
            })
        except Exception as e:
            self.processing_log.record('draft_created', client, f"{meeting.meeting_title} [{meeting.key}]: {e}",
                                       status='error')
            raise

        self.processing_log.record('draft_created', client, f"{meeting.meeting_title} -> {draft_id}")
        logger.info(f"Drafted summary for '{meeting.meeting_title}' ({client or 'no client'}): {draft_id}")
        return IntakeOutcome(meeting.key, 'drafted', client=client, draft_id=draft_id)

    def compose_summary_email(self, meeting: MeetingEvent) -> str:
        if self.ai is not None and self.ai.available:
            transcript = meeting.transcript or "No transcript available."
            if len(transcript) > MAX_TRANSCRIPT_CHARS:
                transcript = transcript[:MAX_TRANSCRIPT_CHARS] + "\n[truncated]"
            prompt = self.prompt_template.format(
                title=meeting.meeting_title,
                date=meeting.meeting_date,
                summary=meeting.summary or "None provided.",
                action_items=format_action_items(meeting.action_items),
                transcript=transcript,
            )
            try:
                body = clean_ai_content(self.ai.complete(prompt))
                if body:
                    return body
                logger.warning(f"AI summary for '{meeting.meeting_title}' was empty, using template")
            except ExternalServiceError as e:
                logger.warning(f"AI summary for '{meeting.meeting_title}' failed, using template: {e}")
        return self.template_summary_email(meeting)

    def template_summary_email(self, meeting: MeetingEvent) -> str:
        lines = [
            "Hi all,",
            "",
            f"Thanks for joining {meeting.meeting_title} on {meeting.meeting_date}. "
            "Here is a summary of what we covered.",
            "",
            "Summary",
            meeting.summary.strip() or "(no summary available)",
            "",
            "Action Items",
            format_action_items(meeting.action_items),
        ]
        if meeting.fathom_url:
            lines += ["", f"Recording: {meeting.fathom_url}"]
        return '\n'.join(lines) + '\n'

    def poll_meetings(self, now: datetime | None = None) -> list[IntakeOutcome]:
        """Catch meetings the webhook missed."""
        now = now or datetime.now(timezone.utc)
        try:
            self.settings.validate_for('meetings')
        except ConfigurationError as e:
            logger.error(f"Meeting poll disabled: {e}")
            self.processing_log.record('meeting_poll', None, str(e), status='error')
            return []

        since = now - timedelta(hours=self.settings.meetings_lookback_hours)
        meetings = self.meetings_api.list_meetings(since)
        logger.info(f"Meeting poll: {len(meetings)} meeting(s) since {since.isoformat()}")

        outcomes = []
        for meeting in meetings:
            try:
                outcomes.append(self.handle_meeting(meeting))
            except Exception as e:
                logger.error(f"Meeting '{meeting.meeting_title}' failed: {e}", exc_info=True)
                outcomes.append(IntakeOutcome(meeting.key, 'failed', error=str(e)))
        return outcomes

    def reconcile_pending_drafts(self) -> list[LedgerKey]:
        """Close pending drafts that are gone from the mailbox (sent or discarded)."""
        closed = []
        for key in self.ledger.get_pending(PENDING_DRAFT):
            if self.mail.draft_exists(key.external_id):
                continue
            entry = self.ledger.get_entry(key)
            self.ledger.mark_processed(key, client=entry.client if entry else None,
                                       metadata=entry.metadata if entry else None)
            closed.append(key)
        if closed:
            logger.info(f"Closed {len(closed)} pending draft(s)")
        return closed


class SummaryWorkflow:
    def __init__(self, settings, directory, matcher, ledger, processing_log, unmatched_log,
                 mail, documents, tasks, ai=None):
        self.settings = settings
        self.directory = directory
        self.matcher = matcher
        self.ledger = ledger
        self.processing_log = processing_log
        self.unmatched_log = unmatched_log
        self.mail = mail
        self.documents = documents
        self.tasks = tasks
        self.ai = ai
        self.extraction_template = load_prompt_template(
            settings.prompt_dir or settings.data_repo, 'extract_action_items.txt', DEFAULT_EXTRACTION_PROMPT
        )

    def run_batch(self, now: datetime | None = None) -> list[SummaryOutcome]:
        now = now or datetime.now(timezone.utc)
        try:
            self.settings.validate_for('summaries')
        except ConfigurationError as e:
            logger.error(f"Summary poll disabled: {e}")
            self.processing_log.record('summary_batch', None, str(e), status='error')
            return []

        since = now - timedelta(hours=self.settings.summary_lookback_hours)
        outcomes = []
        seen = set()
        for client in self.directory.list():
            try:
                messages = self.mail.list_sent(client.base_label, since)
            except Exception as e:
                logger.error(f"Listing sent mail for {client.name} failed: {e}", exc_info=True)
                continue
            for message in messages:
                if not message.first_in_thread or message.id in seen:
                    continue
                seen.add(message.id)
                outcomes.append(self.process_message(message, client))

        recorded = sum(1 for o in outcomes if o.state == SummaryState.RECORDED)
        logger.info(f"Summary poll: {len(outcomes)} candidate(s), {recorded} processed")
        return outcomes

    def process_message(self, message: EmailMessage, labeled_client: Client | None = None) -> SummaryOutcome:
        outcome = SummaryOutcome(message_id=message.id, subject=message.subject)
        outcome.advance(SummaryState.DETECTED)

        key = LedgerKey(PROCESSED_MESSAGE, message.id)
        try:
            if self.ledger.has_processed(key):
                outcome.advance(SummaryState.DEDUPLICATED)
                return outcome

            client = labeled_client
            if client is None:
                match = resolve_client(self.matcher, self.unmatched_log, message.to, 'summary_email', message.subject)
                if match is None:
                    outcome.error = "no client match"
                    outcome.advance(SummaryState.FAILED)
                    return outcome
                client = match.client
            outcome.client = client.name
            outcome.advance(SummaryState.CLIENT_IDENTIFIED)

            outcome.items = self.extract_items(message)
            outcome.advance(SummaryState.ITEMS_EXTRACTED)

            outcome.created_tasks = self.create_tasks(message, client, outcome.items)
            outcome.advance(SummaryState.TASKS_CREATED)

            if client.notes_doc_id:
                section = format_notes_section(
                    message.subject, message.date.isoformat(), message.id,
                    self.notes_body(message, outcome.items),
                )
                self.documents.append(client.notes_doc_id, section)
            else:
                logger.info(f"{client.name} has no notes document, summary not archived")
            outcome.advance(SummaryState.NOTES_APPENDED)

            self.mail.add_label(message.id, client.summaries_label)
            outcome.advance(SummaryState.LABELED)

            self.ledger.mark_processed(key, client=client.name, metadata={
                'subject': message.subject,
                'items': len(outcome.items),
                'tasks': outcome.created_tasks,
            })
            self.processing_log.record(
                'summary_processed', client.name,
                f"{message.subject}: {len(outcome.items)} item(s), {len(outcome.created_tasks)} task(s) created",
            )
            outcome.advance(SummaryState.RECORDED)

        except Exception as e:
            outcome.error = str(e)
            outcome.advance(SummaryState.FAILED)
            logger.error(f"Summary '{message.subject}' failed: {e}", exc_info=True)
            self.processing_log.record('summary_processed', outcome.client, f"{message.subject}: {e}", status='error')

        return outcome

    def extract_items(self, message: EmailMessage) -> list[ActionItem]:
        """AI extraction when available, regex fallback otherwise. Never raises on AI problems."""
        if self.ai is not None and self.ai.available:
            prompt = self.extraction_template.format(subject=message.subject, body=message.body)
            try:
                items = parse_ai_action_items(self.ai.complete(prompt))
                logger.info(f"AI extracted {len(items)} action item(s) from '{message.subject}'")
                return items
            except (ExternalServiceError, ValueError) as e:
                logger.warning(f"AI extraction failed for '{message.subject}', using regex fallback: {e}")
        items = parse_action_items(message.body)
        logger.info(f"Regex extracted {len(items)} action item(s) from '{message.subject}'")
        return items

    def create_tasks(self, message: EmailMessage, client: Client, items: list[ActionItem]) -> list[str]:
        if not items:
            return []
        if not client.task_project_id:
            logger.info(f"{client.name} has no task project, {len(items)} item(s) not tracked")
            return []

        try:
            collaborators = self.tasks.list_collaborators(client.task_project_id)
        except ExternalServiceError as e:
            logger.warning(f"Could not load collaborators for {client.name}, tasks will be unassigned: {e}")
            collaborators = []

        created = []
        for item in items:
            task_key = LedgerKey(CREATED_TASK, f"{message.id}:{item_digest(item)}")
            if self.ledger.has_processed_durable(task_key):
                logger.debug(f"Task for '{item.description}' already created")
                continue
            task = self.tasks.create_task(
                client.task_project_id, item,
                assignee_id=find_collaborator(item, collaborators),
                description=f"From meeting summary: {message.subject}",
            )
            self.ledger.mark_processed(task_key, client=client.name,
                                       metadata={'task_id': task.id, 'content': item.description})
            created.append(task.id)
        return created

    def notes_body(self, message: EmailMessage, items: list[ActionItem]) -> str:
        return '\n'.join([
            f"Subject: {message.subject}",
            f"Sent: {message.date.isoformat()}",
            f"To: {', '.join(message.to)}",
            "",
            "Action Items",
            format_action_items(items),
            "",
            "Summary Email",
            message.body.strip(),
        ])

