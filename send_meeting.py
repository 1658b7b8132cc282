#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.31.0",
# ]
# ///
"""
Test script for the webhook daemon

Sends a meeting JSON file to consultflowd, signing the body when a secret is
given (or FATHOM_WEBHOOK_SECRET is set).

Usage:
    uv run send_meeting.py <meeting.json>
    uv run send_meeting.py -h myhost:1234 --secret s3cret <meeting.json>
"""

import sys
import os
import argparse
import base64
import hashlib
import hmac
import requests
import json


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()
    return f"v1,{base64.b64encode(digest).decode('ascii')}"


def send_to_webhook(filepath, webhook_url="http://localhost:9877/webhook", secret=None,
                    header='webhook-signature'):
    """Send a meeting file to the webhook daemon."""

    if not os.path.exists(filepath):
        print(f"Error: File not found: {filepath}")
        return False

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        print(f"Error reading file: {e}")
        return False

    body = json.dumps(payload).encode('utf-8')
    headers = {'Content-Type': 'application/json'}
    if secret:
        headers[header] = sign_body(secret, body)

    print(f"Sending to webhook: {webhook_url}")
    print(f"Title: {payload.get('meeting_title') or payload.get('title')}")
    print(f"Payload size: {len(body)} bytes ({'signed' if secret else 'unsigned'})")
    print()

    try:
        response = requests.post(webhook_url, data=body, headers=headers, timeout=60)

        print(f"Response status: {response.status_code}")
        print("Response body:")
        print(json.dumps(response.json(), indent=2))

        return response.status_code == 200

    except requests.exceptions.ConnectionError:
        print("Error: Could not connect to webhook daemon.")
        print("Make sure it's running: uv run consultflowd.py")
        return False
    except ValueError:
        print(f"Error: Non-JSON response: {response.text[:200]}")
        return False


def main():
    parser = argparse.ArgumentParser(
        description="Send a meeting JSON file to the webhook daemon.",
        add_help=False  # Disable default -h so we can use it for host
    )
    parser.add_argument(
        '-h', '--host',
        metavar='HOST:PORT',
        default='localhost:9877',
        help='Host and port to send to (default: localhost:9877)'
    )
    parser.add_argument(
        '--secret',
        default=os.environ.get('FATHOM_WEBHOOK_SECRET'),
        help='Webhook secret used to sign the body (default: $FATHOM_WEBHOOK_SECRET)'
    )
    parser.add_argument(
        '--header',
        default='webhook-signature',
        help='Signature header name (default: webhook-signature)'
    )
    parser.add_argument(
        '--help',
        action='help',
        help='Show this help message and exit'
    )
    parser.add_argument(
        'meeting_file',
        help='Path to the meeting JSON file to send'
    )

    args = parser.parse_args()

    webhook_url = f"http://{args.host}/webhook"
    success = send_to_webhook(args.meeting_file, webhook_url, args.secret, args.header)
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
