#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "flask>=3.0.0",
#     "pyyaml>=6.0.0",
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Consultflow Daemon (consultflowd)

Receives meeting-completed webhooks from the meeting recorder and turns each
meeting into a summary email draft. Configuration is loaded from config.yaml
(or CONSULTFLOW_CONFIG).

Run with: uv run consultflowd.py

Endpoints:
  GET  /         - Health check
  POST /webhook  - Receive a finished meeting

Test webhook (signature enforcement off, or no secret configured):
curl -X POST http://localhost:9877/webhook \
  -H "Content-Type: application/json" \
  -d '{"meeting_title": "Acme sync", "meeting_date": "2026-10-19T10:00:00Z", "participants": [{"name": "Jane", "email": "jane@acme.com"}]}'

Or use send_meeting.py, which signs the body when a secret is given.
"""

from flask import Flask, request, jsonify
import base64
import hashlib
import hmac
import logging
import argparse

from client_matching import ClientDirectory, ClientMatcher
from consultflow_config import Settings, load_config
from idempotency_ledger import IdempotencyLedger, ProcessingLog, UnmatchedLog
from meeting_notes import normalize_meeting_payload
from service_clients import ClaudeClient
from summary_workflow import MeetingIntake
from workspace_store import LocalMailbox

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_signature(body: bytes, header: str | None, secret: str) -> bool:
    """Check a `v1,<sig> v1,<sig2> ...` header against HMAC-SHA256(secret, body).

    Any listed signature matching is enough (secret rotation sends several).
    """
    if not header:
        return False
    expected = compute_signature(secret, body)
    for token in header.split():
        candidate = token.split(',', 1)[1] if ',' in token else token
        if hmac.compare_digest(candidate.strip(), expected):
            return True
    return False


class WebhookService:
    def __init__(self, settings: Settings, intake: MeetingIntake):
        self.settings = settings
        self.intake = intake

    @classmethod
    def from_settings(cls, settings: Settings) -> 'WebhookService':
        directory = ClientDirectory.from_yaml(settings.repo_path / 'clients.yaml')
        ledger = IdempotencyLedger.from_settings(settings)
        intake = MeetingIntake(
            settings,
            ClientMatcher(directory),
            ledger,
            ProcessingLog(ledger.store),
            UnmatchedLog(ledger.store),
            LocalMailbox(settings.repo_path, settings.owner_email, settings.business_hours.timezone),
            ai=ClaudeClient(settings.anthropic_api_key, settings.anthropic_model, settings.anthropic_max_tokens),
        )
        return cls(settings, intake)

    def check_signature(self, body: bytes, header: str | None) -> bool:
        """True if the request may proceed."""
        secret = self.settings.fathom_webhook_secret
        if not secret:
            logger.warning("No webhook secret configured; skipping signature verification")
            return True
        if verify_signature(body, header, secret):
            return True
        if self.settings.enforce_signature:
            logger.warning("Rejected webhook: signature missing or invalid")
            return False
        logger.warning("Webhook signature missing or invalid; continuing because enforcement is disabled")
        return True


# Set in __main__ (or by tests) once configuration has been loaded
service: WebhookService | None = None


@app.route('/', methods=['GET'])
def health_check():
    """Health check endpoint."""
    settings = service.settings if service else None
    return jsonify({
        'status': 'ok',
        'service': 'consultflowd',
        'configured': service is not None,
        'repository': settings.data_repo if settings else None,
        'port': settings.port if settings else None,
        'endpoints': {
            'health': '/',
            'meeting': '/webhook',
        },
        'signature': {
            'secret_configured': bool(settings and settings.fathom_webhook_secret),
            'enforced': bool(settings and settings.enforce_signature),
        },
    }), 200


@app.route('/webhook', methods=['POST'])
def webhook():
    """
    Webhook endpoint for finished meetings.

    Expected payload (field-name variants are normalized):
    {
        "meeting_title": "Acme weekly sync",
        "meeting_date": "2026-10-19T10:00:00Z",
        "transcript": "..." or [{"speaker": {"display_name": "Jane"}, "text": "..."}],
        "summary": "..." or {"markdown_formatted": "..."},
        "action_items": [{"description": "...", "assignee": {"name": "...", "email": "..."}}],
        "participants": [{"name": "Jane", "email": "jane@acme.com"}],
        "fathom_url": "https://fathom.video/calls/123"
    }
    """
    if service is None:
        return jsonify({
            'status': 'error',
            'message': 'Service is not configured'
        }), 500

    try:
        # Validate size before reading the body
        max_bytes = service.settings.max_payload_bytes
        if request.content_length is not None and request.content_length > max_bytes:
            logger.warning(f"Payload too large ({request.content_length} bytes)")
            return jsonify({
                'status': 'error',
                'message': f'Payload too large. Maximum size is {max_bytes} bytes.'
            }), 413

        raw_body = request.get_data(cache=True)
        if len(raw_body) > max_bytes:
            logger.warning(f"Payload too large ({len(raw_body)} bytes)")
            return jsonify({
                'status': 'error',
                'message': f'Payload too large. Maximum size is {max_bytes} bytes.'
            }), 413

        if not service.check_signature(raw_body, request.headers.get(service.settings.signature_header)):
            return jsonify({
                'status': 'error',
                'message': 'Invalid webhook signature'
            }), 401

        if not request.is_json:
            logger.warning(f"Invalid content type: {request.content_type}")
            return jsonify({
                'status': 'error',
                'message': 'Content-Type must be application/json'
            }), 400

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            logger.warning("Webhook body is not a JSON object")
            return jsonify({
                'status': 'error',
                'message': 'Body must be a JSON object'
            }), 400

        try:
            meeting = normalize_meeting_payload(data)
        except ValueError as e:
            logger.warning(f"Rejected webhook payload: {e}")
            return jsonify({
                'status': 'error',
                'message': str(e)
            }), 400

        outcome = service.intake.handle_meeting(meeting)
        return jsonify({
            'status': 'success',
            'result': outcome.status,
            'meeting': meeting.meeting_title,
            'meeting_key': outcome.meeting_key,
            'client': outcome.client,
            'draft_id': outcome.draft_id,
        }), 200

    except Exception as e:
        logger.error(f"Error processing webhook: {str(e)}", exc_info=True)
        return jsonify({
            'status': 'error',
            'message': f'Internal server error: {str(e)}'
        }), 500


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Consultflow Daemon (consultflowd)')
    parser.add_argument('--config', help='Path to config.yaml (default: $CONSULTFLOW_CONFIG or ./config.yaml)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    # Configure logging based on --debug flag
    logging.getLogger().setLevel(logging.DEBUG if args.debug else logging.INFO)

    settings = Settings.from_dict(load_config(args.config))
    settings.validate()
    settings.validate_for('webhook')
    service = WebhookService.from_settings(settings)

    if not settings.fathom_webhook_secret:
        logger.warning("FATHOM_WEBHOOK_SECRET is not set; webhooks will be accepted unsigned")

    logger.info(f"Starting consultflowd on {settings.host}:{settings.port}")
    logger.info(f"Repository: {settings.data_repo}")
    logger.info(f"Health check: http://{settings.host}:{settings.port}/")
    logger.info(f"Meeting webhook: http://{settings.host}:{settings.port}/webhook")

    app.run(host=settings.host, port=settings.port, debug=False)
