"""
Configuration loading for consultflow.

Settings come from a YAML file (CONSULTFLOW_CONFIG, default config.yaml) and
secrets from the environment. The resulting Settings object is passed
explicitly into the workflows; nothing reads configuration ambiently.

Example config.yaml:

    data_repo: ~/git/consulting-data
    owner_email: me@myconsultancy.com
    server:
      host: 127.0.0.1
      port: 9877
    webhook:
      enforce_signature: true
    agenda:
      lookahead_hours: 24
      max_tasks: 10
      business_hours: {start: 8, end: 18, weekdays_only: true, timezone: America/New_York}
    summary:
      lookback_hours: 24
    briefing_labels:
      daily: Daily Briefing
      weekly: Weekly Briefing
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from workflow_errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE = os.getenv('CONSULTFLOW_CONFIG', 'config.yaml')

# Required settings per feature. Checked at the start of each batch.
FEATURE_REQUIREMENTS = {
    'agendas': ('owner_email', 'anthropic_api_key', 'todoist_api_token'),
    'summaries': ('owner_email', 'todoist_api_token'),
    'meetings': ('owner_email', 'fathom_api_key'),
    'webhook': ('owner_email',),
    'filters': (),
    'drafts': (),
}


def load_config(config_file: str | None = None) -> dict:
    """Load configuration from YAML file."""
    config_path = Path(config_file or CONFIG_FILE)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def _get_nested(config: dict, keys: list[str], default=None):
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


@dataclass
class BusinessHours:
    start_hour: int = 8
    end_hour: int = 18
    weekdays_only: bool = True
    timezone: str = 'UTC'


@dataclass
class Settings:
    data_repo: str = '.'
    owner_email: str | None = None
    host: str = '127.0.0.1'
    port: int = 9877

    anthropic_api_key: str | None = None
    anthropic_model: str = 'claude-sonnet-4-20250514'
    anthropic_max_tokens: int = 2048
    todoist_api_token: str | None = None
    fathom_api_key: str | None = None
    fathom_webhook_secret: str | None = None

    enforce_signature: bool = True
    signature_header: str = 'webhook-signature'
    max_payload_bytes: int = 1024 * 1024

    agenda_lookahead_hours: int = 24
    agenda_max_tasks: int = 10
    agenda_max_threads: int = 20
    agenda_thread_days: int = 7
    business_hours: BusinessHours = field(default_factory=BusinessHours)

    summary_lookback_hours: int = 24
    meetings_lookback_hours: int = 2

    notified_ttl_hours: int = 6
    message_ttl_days: int = 7
    cache_capacity: int = 1000

    briefing_labels: tuple[str, ...] = ()
    prompt_dir: str | None = None

    @classmethod
    def from_dict(cls, config: dict, environ: dict | None = None) -> 'Settings':
        env = os.environ if environ is None else environ
        hours = _get_nested(config, ['agenda', 'business_hours'], {}) or {}
        briefing = config.get('briefing_labels') or {}
        if isinstance(briefing, dict):
            briefing_labels = tuple(v for v in (briefing.get('daily'), briefing.get('weekly')) if v)
        else:
            briefing_labels = tuple(briefing)

        data_repo = config.get('data_repo') or '.'
        return cls(
            data_repo=str(Path(data_repo).expanduser()),
            owner_email=(config.get('owner_email') or '').strip().lower() or None,
            host=_get_nested(config, ['server', 'host'], '127.0.0.1'),
            port=int(_get_nested(config, ['server', 'port'], 9877)),
            anthropic_api_key=_get_nested(config, ['anthropic', 'api_key']) or env.get('ANTHROPIC_API_KEY'),
            anthropic_model=_get_nested(config, ['anthropic', 'model'], 'claude-sonnet-4-20250514'),
            anthropic_max_tokens=int(_get_nested(config, ['anthropic', 'max_tokens'], 2048)),
            todoist_api_token=_get_nested(config, ['todoist', 'api_token']) or env.get('TODOIST_API_TOKEN'),
            fathom_api_key=_get_nested(config, ['fathom', 'api_key']) or env.get('FATHOM_API_KEY'),
            fathom_webhook_secret=_get_nested(config, ['webhook', 'secret']) or env.get('FATHOM_WEBHOOK_SECRET'),
            enforce_signature=bool(_get_nested(config, ['webhook', 'enforce_signature'], True)),
            signature_header=_get_nested(config, ['webhook', 'signature_header'], 'webhook-signature'),
            max_payload_bytes=int(_get_nested(config, ['webhook', 'max_payload_bytes'], 1024 * 1024)),
            agenda_lookahead_hours=int(_get_nested(config, ['agenda', 'lookahead_hours'], 24)),
            agenda_max_tasks=int(_get_nested(config, ['agenda', 'max_tasks'], 10)),
            agenda_max_threads=min(int(_get_nested(config, ['agenda', 'max_threads'], 20)), 20),
            agenda_thread_days=int(_get_nested(config, ['agenda', 'thread_days'], 7)),
            business_hours=BusinessHours(
                start_hour=int(hours.get('start', 8)),
                end_hour=int(hours.get('end', 18)),
                weekdays_only=bool(hours.get('weekdays_only', True)),
                timezone=hours.get('timezone', 'UTC'),
            ),
            summary_lookback_hours=int(_get_nested(config, ['summary', 'lookback_hours'], 24)),
            meetings_lookback_hours=int(_get_nested(config, ['meetings', 'lookback_hours'], 2)),
            notified_ttl_hours=int(_get_nested(config, ['cache', 'notified_ttl_hours'], 6)),
            message_ttl_days=int(_get_nested(config, ['cache', 'message_ttl_days'], 7)),
            cache_capacity=int(_get_nested(config, ['cache', 'capacity'], 1000)),
            briefing_labels=briefing_labels,
            prompt_dir=config.get('prompt_dir'),
        )

    def validate(self) -> None:
        """Startup validation of values that must be sane regardless of feature."""
        bh = self.business_hours
        if not (0 <= bh.start_hour < bh.end_hour <= 24):
            raise ConfigurationError(
                f"agenda.business_hours must satisfy 0 <= start < end <= 24 (got {bh.start_hour}-{bh.end_hour})"
            )
        if self.agenda_max_tasks < 1:
            raise ConfigurationError("agenda.max_tasks must be at least 1")

    def validate_for(self, feature: str) -> None:
        """Raise ConfigurationError if a setting required by `feature` is missing."""
        missing = [name for name in FEATURE_REQUIREMENTS.get(feature, ()) if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"{feature}: missing required setting(s): {', '.join(missing)}")

    @property
    def repo_path(self) -> Path:
        return Path(self.data_repo).resolve()

    @property
    def ledger_path(self) -> Path:
        return self.repo_path / 'ledger.sqlite3'
