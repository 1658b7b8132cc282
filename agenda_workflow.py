"""
Agenda generation for upcoming client meetings.

Run hourly (inside business hours). For every calendar event starting within
the lookahead window:

    DISCOVERED -> MATCHED -> CONTEXT_GATHERED -> AI_GENERATED -> EMAIL_SENT
               -> DOC_APPENDED -> RECORDED
    DISCOVERED -> NO_MATCH
    MATCHED    -> ALREADY_GENERATED
    any step   -> FAILED   (logged; ledger untouched so the next run retries)

The generated_agendas row is written last, and the durable tier is checked
again immediately before the email goes out, so an event gets at most one
agenda no matter how many hourly scans see it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from action_items import ActionItem, Task, find_unmatched, parse_action_items
from client_matching import Client
from consultflow_config import BusinessHours
from idempotency_ledger import GENERATED_AGENDA, LedgerKey
from meeting_notes import clean_ai_content, format_agenda_section, latest_notes_section, load_prompt_template, resolve_client
from workflow_errors import ConfigurationError, ExternalServiceError
from workspace_store import CalendarEvent, EmailMessage

logger = logging.getLogger(__name__)

MAX_NOTES_CHARS = 6000
SNIPPET_CHARS = 300

DEFAULT_AGENDA_PROMPT = """You are preparing a consultant for an upcoming client meeting.

Meeting: {title}
When: {when}
Client: {client}

## Open tasks due today or earlier
{tasks}

## Recent email threads with the client (last {thread_days} days)
{threads}

## Notes from the most recent meeting
{last_notes}

## Action items from that meeting not yet tracked as tasks
{open_items}

Write a concise meeting agenda as an HTML fragment (no <html>, <head> or <body>
tags, no markdown code fences). Include: objectives, a short recap of where
things stand, discussion topics in priority order, and follow-ups to raise.
Only use facts from the context above."""


class AgendaState(str, Enum):
    DISCOVERED = "discovered"
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ALREADY_GENERATED = "already_generated"
    CONTEXT_GATHERED = "context_gathered"
    AI_GENERATED = "ai_generated"
    EMAIL_SENT = "email_sent"
    DOC_APPENDED = "doc_appended"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass
class AgendaOutcome:
    event_id: str
    title: str
    state: AgendaState = AgendaState.DISCOVERED
    client: str | None = None
    error: str | None = None
    history: list[AgendaState] = field(default_factory=list)

    def advance(self, state: AgendaState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class AgendaContext:
    tasks: list[Task] = field(default_factory=list)
    threads: list[EmailMessage] = field(default_factory=list)
    last_notes: str | None = None
    open_items: list[ActionItem] = field(default_factory=list)


def within_business_hours(now: datetime, hours: BusinessHours) -> bool:
    local = now.astimezone(ZoneInfo(hours.timezone))
    if hours.weekdays_only and local.weekday() >= 5:
        return False
    return hours.start_hour <= local.hour < hours.end_hour


def _due_on_or_before(task: Task, day: str) -> bool:
    return bool(task.due_date) and task.due_date[:10] <= day


def _format_tasks(tasks: list[Task]) -> str:
    if not tasks:
        return "No open tasks due."
    return '\n'.join(f"- {t.content} (due {t.due_date[:10]})" for t in tasks)


def _format_threads(threads: list[EmailMessage]) -> str:
    if not threads:
        return "No recent email threads."
    lines = []
    for message in threads:
        snippet = ' '.join(message.body.split())[:SNIPPET_CHARS]
        lines.append(f"- [{message.date:%Y-%m-%d}] {message.subject} (from {message.sender}): {snippet}")
    return '\n'.join(lines)


def _format_items(items: list[ActionItem]) -> str:
    if not items:
        return "None."
    lines = []
    for item in items:
        owner = f" (owner: {item.assignee})" if item.assignee else ''
        lines.append(f"- {item.description}{owner}")
    return '\n'.join(lines)


class AgendaWorkflow:
    def __init__(self, settings, matcher, ledger, processing_log, unmatched_log,
                 calendar, mail, documents, tasks, ai):
        self.settings = settings
        self.matcher = matcher
        self.ledger = ledger
        self.processing_log = processing_log
        self.unmatched_log = unmatched_log
        self.calendar = calendar
        self.mail = mail
        self.documents = documents
        self.tasks = tasks
        self.ai = ai
        self.prompt_template = load_prompt_template(
            settings.prompt_dir or settings.data_repo, 'agenda.txt', DEFAULT_AGENDA_PROMPT
        )

    def run_batch(self, now: datetime | None = None) -> list[AgendaOutcome]:
        """Process every upcoming event once. One event's failure never stops the rest."""
        tz = ZoneInfo(self.settings.business_hours.timezone)
        now = now or datetime.now(tz)

        if not within_business_hours(now, self.settings.business_hours):
            logger.info(f"Agenda scan skipped: {now:%a %H:%M} is outside business hours")
            return []

        try:
            self.settings.validate_for('agendas')
        except ConfigurationError as e:
            logger.error(f"Agenda scan disabled: {e}")
            self.processing_log.record('agenda_batch', None, str(e), status='error')
            return []

        window_end = now + timedelta(hours=self.settings.agenda_lookahead_hours)
        events = self.calendar.list_events(now, window_end)
        logger.info(f"Agenda scan: {len(events)} event(s) between {now:%Y-%m-%d %H:%M} and {window_end:%Y-%m-%d %H:%M}")

        outcomes = []
        for event in events:
            outcome = self.process_event(event, now)
            outcomes.append(outcome)
        generated = sum(1 for o in outcomes if o.state == AgendaState.RECORDED)
        failed = sum(1 for o in outcomes if o.state == AgendaState.FAILED)
        logger.info(f"Agenda scan complete: {generated} generated, {failed} failed, {len(outcomes)} total")
        return outcomes

    def process_event(self, event: CalendarEvent, now: datetime | None = None) -> AgendaOutcome:
        now = now or datetime.now(event.start.tzinfo)
        outcome = AgendaOutcome(event_id=event.id, title=event.title)
        outcome.advance(AgendaState.DISCOVERED)

        try:
            match = resolve_client(
                self.matcher, self.unmatched_log, list(event.guests),
                'calendar_event', f"{event.title} ({event.start.isoformat()})",
            )
            if match is None:
                outcome.advance(AgendaState.NO_MATCH)
                return outcome

            client = match.client
            outcome.client = client.name
            outcome.advance(AgendaState.MATCHED)

            key = LedgerKey(GENERATED_AGENDA, event.id)
            if self.ledger.has_processed(key):
                logger.debug(f"Agenda already generated for {event.id}")
                outcome.advance(AgendaState.ALREADY_GENERATED)
                return outcome

            context = self.gather_context(client, now)
            outcome.advance(AgendaState.CONTEXT_GATHERED)

            agenda = self.generate_agenda(event, client, context)
            outcome.advance(AgendaState.AI_GENERATED)

            if self.ledger.has_processed_durable(key):
                logger.info(f"Agenda for {event.id} was recorded by another run, not sending")
                outcome.advance(AgendaState.ALREADY_GENERATED)
                return outcome

            subject = f"Agenda: {event.title} ({event.start:%a %b %d, %H:%M})"
            self.mail.send_email([self.settings.owner_email], subject, agenda)
            outcome.advance(AgendaState.EMAIL_SENT)

            if client.notes_doc_id:
                section = format_agenda_section(event.title, event.start.isoformat(), event.id, agenda)
                self.documents.append(client.notes_doc_id, section)
            else:
                logger.info(f"{client.name} has no notes document, agenda not archived")
            outcome.advance(AgendaState.DOC_APPENDED)

            self.ledger.mark_processed(key, client=client.name, metadata={'title': event.title})
            self.processing_log.record('agenda_generated', client.name, f"{event.title} [{event.id}]")
            outcome.advance(AgendaState.RECORDED)
            logger.info(f"Agenda generated for '{event.title}' ({client.name})")

        except Exception as e:
            outcome.error = str(e)
            outcome.advance(AgendaState.FAILED)
            logger.error(f"Agenda for '{event.title}' failed: {e}", exc_info=not isinstance(e, ExternalServiceError))
            self.processing_log.record('agenda_generated', outcome.client, f"{event.title} [{event.id}]: {e}",
                                       status='error')

        return outcome

    def gather_context(self, client: Client, now: datetime) -> AgendaContext:
        context = AgendaContext()
        today = now.date().isoformat()

        all_tasks = []
        if client.task_project_id:
            all_tasks = self.tasks.list_tasks(client.task_project_id)
            due = [t for t in all_tasks if _due_on_or_before(t, today)]
            due.sort(key=lambda t: t.due_date, reverse=True)
            context.tasks = due[:self.settings.agenda_max_tasks]

        since = now - timedelta(days=self.settings.agenda_thread_days)
        context.threads = self.mail.search_messages(
            list(client.contacts), sorted(client.domains), since, self.settings.agenda_max_threads
        )

        if client.notes_doc_id:
            context.last_notes = latest_notes_section(self.documents.read(client.notes_doc_id))
            if context.last_notes:
                context.open_items = find_unmatched(parse_action_items(context.last_notes), all_tasks)

        logger.debug(
            f"Context for {client.name}: {len(context.tasks)} task(s), {len(context.threads)} thread(s), "
            f"{'notes' if context.last_notes else 'no notes'}, {len(context.open_items)} open item(s)"
        )
        return context

    def build_prompt(self, event: CalendarEvent, client: Client, context: AgendaContext) -> str:
        last_notes = context.last_notes or "No previous meeting notes."
        if len(last_notes) > MAX_NOTES_CHARS:
            last_notes = last_notes[:MAX_NOTES_CHARS] + "\n[truncated]"
        return self.prompt_template.format(
            title=event.title,
            when=f"{event.start:%A %Y-%m-%d %H:%M}-{event.end:%H:%M}",
            client=client.name,
            tasks=_format_tasks(context.tasks),
            thread_days=self.settings.agenda_thread_days,
            threads=_format_threads(context.threads),
            last_notes=last_notes,
            open_items=_format_items(context.open_items),
        )

    def generate_agenda(self, event: CalendarEvent, client: Client, context: AgendaContext) -> str:
        prompt = self.build_prompt(event, client, context)
        logger.debug(f"Agenda prompt for {event.id}: {len(prompt)} chars")
        agenda = clean_ai_content(self.ai.complete(prompt))
        if not agenda:
            raise ExternalServiceError('anthropic', "agenda response was empty after cleanup")
        return agenda
