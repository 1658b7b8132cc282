#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pyyaml>=6.0",
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Consultflow workflow runner

Runs one batch of a scheduled workflow against the data repository and
exits. Scheduling is external (cron, systemd timers):

    */10 * * * *   uv run run_workflows.py --trigger summaries
    */30 * * * *   uv run run_workflows.py --trigger meetings
    0 * * * *      uv run run_workflows.py --trigger agendas
    15 * * * *     uv run run_workflows.py --trigger drafts
    0 6 * * *      uv run run_workflows.py --trigger filters

Exit status is 1 if any item in the batch failed, 2 on configuration errors.
"""

import argparse
import logging
import sys
from datetime import datetime

from agenda_workflow import AgendaState, AgendaWorkflow
from client_matching import ClientDirectory, ClientMatcher
from consultflow_config import Settings, load_config
from filter_safety import FilterSafetyGuard
from idempotency_ledger import IdempotencyLedger, ProcessingLog, UnmatchedLog
from service_clients import ClaudeClient, FathomClient, TodoistClient
from summary_workflow import MeetingIntake, SummaryState, SummaryWorkflow
from workflow_errors import ConfigurationError
from workspace_store import LocalMailbox, NotesDirectory, OrgCalendar, YamlFilterStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TRIGGERS = ('agendas', 'summaries', 'meetings', 'drafts', 'filters')


class Workspace:
    """Everything a workflow needs, wired from one Settings object."""

    def __init__(self, settings: Settings):
        self.settings = settings
        repo = settings.repo_path
        tz = settings.business_hours.timezone

        self.directory = ClientDirectory.from_yaml(repo / 'clients.yaml')
        self.matcher = ClientMatcher(self.directory)
        self.ledger = IdempotencyLedger.from_settings(settings)
        self.processing_log = ProcessingLog(self.ledger.store)
        self.unmatched_log = UnmatchedLog(self.ledger.store)

        self.calendar = OrgCalendar(repo / 'calendar.org', tz)
        self.mail = LocalMailbox(repo, settings.owner_email, tz)
        self.documents = NotesDirectory(repo / 'notes')
        self.filters = YamlFilterStore(repo / 'mail_filters.yaml')

        self.tasks = TodoistClient(settings.todoist_api_token)
        self.ai = ClaudeClient(settings.anthropic_api_key, settings.anthropic_model, settings.anthropic_max_tokens)
        self.meetings_api = FathomClient(settings.fathom_api_key)

    def agenda_workflow(self) -> AgendaWorkflow:
        return AgendaWorkflow(
            self.settings, self.matcher, self.ledger, self.processing_log, self.unmatched_log,
            self.calendar, self.mail, self.documents, self.tasks, self.ai,
        )

    def summary_workflow(self) -> SummaryWorkflow:
        return SummaryWorkflow(
            self.settings, self.directory, self.matcher, self.ledger, self.processing_log,
            self.unmatched_log, self.mail, self.documents, self.tasks, self.ai,
        )

    def meeting_intake(self) -> MeetingIntake:
        return MeetingIntake(
            self.settings, self.matcher, self.ledger, self.processing_log, self.unmatched_log,
            self.mail, ai=self.ai, meetings_api=self.meetings_api,
        )

    def filter_guard(self) -> FilterSafetyGuard:
        return FilterSafetyGuard(self.filters, self.settings.briefing_labels, self.processing_log)


def run_trigger(workspace: Workspace, trigger: str, now: datetime | None = None) -> int:
    """Run one batch of `trigger`. Returns the number of failed items."""
    if trigger == 'agendas':
        outcomes = workspace.agenda_workflow().run_batch(now)
        return sum(1 for o in outcomes if o.state == AgendaState.FAILED)

    if trigger == 'summaries':
        outcomes = workspace.summary_workflow().run_batch(now)
        return sum(1 for o in outcomes if o.state == SummaryState.FAILED)

    if trigger == 'meetings':
        outcomes = workspace.meeting_intake().poll_meetings(now)
        return sum(1 for o in outcomes if o.status == 'failed')

    if trigger == 'drafts':
        workspace.meeting_intake().reconcile_pending_drafts()
        return 0

    if trigger == 'filters':
        report = workspace.filter_guard().sync_client_filters(workspace.directory.list())
        return len(report.refused)

    raise ValueError(f"Unknown trigger: {trigger}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Run one batch of a consultflow workflow')
    parser.add_argument('--trigger', required=True, choices=TRIGGERS, help='Workflow to run')
    parser.add_argument('--config', help='Path to config.yaml (default: $CONSULTFLOW_CONFIG or ./config.yaml)')
    parser.add_argument('--workspace', help='Data repository (overrides data_repo in config)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args(argv)

    logging.getLogger().setLevel(logging.DEBUG if args.debug else logging.INFO)

    try:
        config = load_config(args.config)
        if args.workspace:
            config['data_repo'] = args.workspace
        settings = Settings.from_dict(config)
        settings.validate()
    except (FileNotFoundError, ConfigurationError) as e:
        logger.error(f"Configuration error: {e}")
        return 2

    workspace = Workspace(settings)
    logger.info(f"Running '{args.trigger}' against {settings.data_repo}")
    failures = run_trigger(workspace, args.trigger)
    if failures:
        logger.warning(f"'{args.trigger}' finished with {failures} failure(s)")
        return 1
    logger.info(f"'{args.trigger}' finished")
    return 0


if __name__ == '__main__':
    sys.exit(main())
