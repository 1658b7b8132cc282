"""
REST clients for the external services the workflows call.

- TodoistClient: task tracker (bearer token).
- ClaudeClient: AI summarizer, single-turn message completion (x-api-key).
- FathomClient: meetings API used by the 30-minute meeting poll (X-Api-Key).

Transient failures (connection errors, timeouts, 429 and 5xx) are retried a
few times with a fixed wait. Anything else that is not a success raises
ExternalServiceError straight away.
"""

import logging
from datetime import datetime

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from action_items import ActionItem, Task
from meeting_notes import MeetingEvent, normalize_meeting_payload
from workflow_errors import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class TransientServiceError(ExternalServiceError):
    """Retryable HTTP failure."""


TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout, TransientServiceError)


class _RestClient:
    service = 'http'

    def __init__(self, session: requests.Session | None = None, timeout: float = 30,
                 max_attempts: int = 3, retry_wait: float = 2.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait

    def _headers(self) -> dict:
        return {}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {**self._headers(), **kwargs.pop('headers', {})}
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_wait),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
                    if response.status_code in RETRY_STATUSES:
                        logger.warning(f"{self.service}: {method} {url} returned {response.status_code}, retrying")
                        raise TransientServiceError(self.service, response.text[:200], response.status_code)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ExternalServiceError(self.service, f"request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ExternalServiceError(self.service, response.text[:500].strip(), response.status_code)
        return response

    def _json(self, response: requests.Response):
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(self.service, f"malformed JSON response: {e}", response.status_code) from e


class TodoistClient(_RestClient):
    service = 'todoist'
    BASE_URL = 'https://api.todoist.com/rest/v2'

    def __init__(self, api_token: str | None, **kwargs):
        super().__init__(**kwargs)
        self.api_token = api_token

    def _headers(self) -> dict:
        if not self.api_token:
            raise ConfigurationError("Todoist API token is not configured")
        return {'Authorization': f'Bearer {self.api_token}'}

    def list_tasks(self, project_id: str) -> list[Task]:
        response = self._request('GET', f'{self.BASE_URL}/tasks', params={'project_id': project_id})
        data = self._json(response)
        if not isinstance(data, list):
            raise ExternalServiceError(self.service, "expected a list of tasks")
        tasks = []
        for raw in data:
            due = raw.get('due') or {}
            tasks.append(Task(
                id=str(raw.get('id')),
                content=raw.get('content') or '',
                due_date=due.get('date'),
                assignee_id=str(raw['assignee_id']) if raw.get('assignee_id') else None,
                url=raw.get('url'),
            ))
        return tasks

    def list_collaborators(self, project_id: str) -> list[dict]:
        response = self._request('GET', f'{self.BASE_URL}/projects/{project_id}/collaborators')
        data = self._json(response)
        return data if isinstance(data, list) else []

    def create_task(self, project_id: str, item: ActionItem, assignee_id: str | None = None,
                    description: str | None = None) -> Task:
        payload = {'content': item.description, 'project_id': project_id}
        if item.due_date:
            try:
                datetime.strptime(item.due_date, '%Y-%m-%d')
                payload['due_date'] = item.due_date
            except ValueError:
                payload['due_string'] = item.due_date
        if assignee_id:
            payload['assignee_id'] = assignee_id
        if description:
            payload['description'] = description

        response = self._request('POST', f'{self.BASE_URL}/tasks', json=payload)
        raw = self._json(response)
        logger.info(f"Created Todoist task {raw.get('id')}: {item.description}")
        due = raw.get('due') or {}
        return Task(
            id=str(raw.get('id')),
            content=raw.get('content') or item.description,
            due_date=due.get('date'),
            assignee_id=str(raw['assignee_id']) if raw.get('assignee_id') else None,
            url=raw.get('url'),
        )


class ClaudeClient(_RestClient):
    service = 'anthropic'
    API_URL = 'https://api.anthropic.com/v1/messages'
    API_VERSION = '2023-06-01'

    def __init__(self, api_key: str | None, model: str = 'claude-sonnet-4-20250514',
                 max_tokens: int = 2048, **kwargs):
        kwargs.setdefault('timeout', 120)
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens

    def _headers(self) -> dict:
        if not self.api_key:
            raise ConfigurationError("Anthropic API key is not configured")
        return {
            'x-api-key': self.api_key,
            'anthropic-version': self.API_VERSION,
            'content-type': 'application/json',
        }

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def complete(self, prompt: str, system: str | None = None) -> str:
        payload = {
            'model': self.model,
            'max_tokens': self.max_tokens,
            'messages': [{'role': 'user', 'content': prompt}],
        }
        if system:
            payload['system'] = system

        response = self._request('POST', self.API_URL, json=payload)
        data = self._json(response)
        blocks = data.get('content') if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            raise ExternalServiceError(self.service, "response has no content blocks", response.status_code)
        text = ''.join(block.get('text', '') for block in blocks if block.get('type') == 'text')
        if not text.strip():
            raise ExternalServiceError(self.service, "response contained no text", response.status_code)
        return text


class FathomClient(_RestClient):
    service = 'fathom'
    BASE_URL = 'https://api.fathom.ai/external/v1'
    MAX_PAGES = 20

    def __init__(self, api_key: str | None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    def _headers(self) -> dict:
        if not self.api_key:
            raise ConfigurationError("Fathom API key is not configured")
        return {'X-Api-Key': self.api_key}

    def list_meetings(self, created_after: datetime) -> list[MeetingEvent]:
        """Fetch meetings created after `created_after`, normalized."""
        params = {
            'created_after': created_after.isoformat(),
            'include_transcript': 'true',
            'include_summary': 'true',
            'include_action_items': 'true',
        }
        meetings = []
        for _ in range(self.MAX_PAGES):
            response = self._request('GET', f'{self.BASE_URL}/meetings', params=params)
            data = self._json(response)
            items = data.get('items', []) if isinstance(data, dict) else data
            for raw in items or []:
                try:
                    meetings.append(normalize_meeting_payload(raw))
                except ValueError as e:
                    logger.warning(f"Skipping malformed meeting from Fathom: {e}")
            cursor = data.get('next_cursor') if isinstance(data, dict) else None
            if not cursor:
                break
            params['cursor'] = cursor
        return meetings
