#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for client_matching.py

Covers:
- normalize_address() / extract_addresses()
- Client.from_record(): defaults for labels, normalization
- ClientDirectory.from_yaml(): file loading, bad rows
- ClientMatcher.match(): contact-before-domain precedence, directory order,
  case/whitespace insensitivity, malformed input

Run with: uv run pytest tests/test_client_matching.py -v
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from client_matching import (
    Client,
    ClientDirectory,
    ClientMatcher,
    MatchMethod,
    extract_addresses,
    normalize_address,
)


# ============================================================================
# Address helpers
# ============================================================================

class TestNormalizeAddress:
    """Tests for normalize_address()."""

    def test_lowercases_and_strips(self):
        assert normalize_address('  Jane@Acme.COM ') == 'jane@acme.com'

    @pytest.mark.parametrize('value', [None, '', '   ', 'no-at-sign', 'a@b@c', '@acme.com', 'jane@', 42, ['x@y.z']])
    def test_rejects_malformed(self, value):
        """Unusable values normalize to None and never raise."""
        assert normalize_address(value) is None


class TestExtractAddresses:
    """Tests for extract_addresses()."""

    def test_header_with_display_names(self):
        header = 'Jane Doe <Jane@Acme.com>, bob@acme.com; "Hank" <hank@globex.io>'
        assert extract_addresses(header) == ['jane@acme.com', 'bob@acme.com', 'hank@globex.io']

    def test_deduplicates_preserving_order(self):
        assert extract_addresses('b@x.io, a@x.io, B@x.io') == ['b@x.io', 'a@x.io']

    def test_empty(self):
        assert extract_addresses('') == []
        assert extract_addresses(None) == []


# ============================================================================
# Client records and directory
# ============================================================================

class TestClientRecord:
    """Tests for Client.from_record()."""

    def test_default_labels(self):
        client = Client.from_record({'name': 'Acme'})
        assert client.base_label == 'Client: Acme'
        assert client.summaries_label == 'Client: Acme/Meeting Summaries'
        assert client.agendas_label == 'Client: Acme/Meeting Agendas'
        assert client.id == 'Acme'
        assert client.setup_complete is False

    def test_contacts_and_domains_normalized(self):
        client = Client.from_record({
            'name': 'Acme',
            'contacts': [' Jane@Acme.com', 'jane@acme.com', 'broken'],
            'domains': ['@ACME.com', ''],
        })
        assert client.contacts == ('jane@acme.com',)
        assert client.domains == frozenset({'acme.com'})


class TestClientDirectory:
    """Tests for ClientDirectory.from_yaml()."""

    def test_loads_clients_in_file_order(self, tmp_path):
        path = tmp_path / 'clients.yaml'
        path.write_text(
            "clients:\n"
            "  - id: acme\n"
            "    name: Acme\n"
            "    contacts: [jane@acme.com]\n"
            "    todoist_project: 2203\n"
            "  - id: globex\n"
            "    name: Globex\n"
            "    domains: [globex.io]\n"
        )
        directory = ClientDirectory.from_yaml(path)
        assert [c.id for c in directory.list()] == ['acme', 'globex']
        assert directory.get('acme').task_project_id == '2203'
        assert directory.get('missing') is None

    def test_skips_rows_without_name(self, tmp_path):
        path = tmp_path / 'clients.yaml'
        path.write_text("clients:\n  - id: nameless\n  - name: Acme\n  - just-a-string\n")
        directory = ClientDirectory.from_yaml(path)
        assert [c.name for c in directory.list()] == ['Acme']

    def test_missing_file_is_empty(self, tmp_path):
        assert ClientDirectory.from_yaml(tmp_path / 'nope.yaml').list() == []

    def test_by_label(self, directory, acme):
        assert directory.by_label('Client: Acme/Meeting Summaries') == acme
        assert directory.by_label('Client: Nobody') is None


# ============================================================================
# ClientMatcher
# ============================================================================

class TestClientMatcher:
    """Tests for ClientMatcher.match()."""

    def test_exact_contact(self, matcher, acme):
        result = matcher.match(['jane@acme.com'])
        assert result.client == acme
        assert result.method == MatchMethod.EXACT_CONTACT

    def test_domain_match(self, matcher, acme):
        result = matcher.match(['someone.else@acme.com'])
        assert result.client == acme
        assert result.method == MatchMethod.DOMAIN

    def test_contact_pass_beats_earlier_domain_candidate(self, matcher, globex):
        """A contact match on any candidate wins over a domain match on an earlier one."""
        result = matcher.match(['other@acme.com', 'hank@globex.io'])
        assert result.client == globex
        assert result.method == MatchMethod.EXACT_CONTACT

    def test_directory_order_breaks_ties(self, matcher, acme):
        """jane@acme.com is a contact of both clients; the first client wins."""
        result = matcher.match(['jane@acme.com'])
        assert result.client == acme

    def test_case_and_whitespace_insensitive(self, matcher, acme):
        assert matcher.match(['  JANE@ACME.COM  ']).client == acme
        assert matcher.match(['Someone@Acme.Com']).method == MatchMethod.DOMAIN

    def test_no_match(self, matcher):
        assert matcher.match(['stranger@elsewhere.org']) is None

    def test_malformed_addresses_never_raise(self, matcher):
        assert matcher.match([None, '', 'not-an-address', 17]) is None
        assert matcher.match([]) is None
        assert matcher.match(None) is None

    def test_malformed_mixed_with_valid(self, matcher, acme):
        assert matcher.match([None, 'bad', 'jane@acme.com']).client == acme

    def test_subdomain_is_not_domain_match(self, matcher):
        """Domains compare exactly on the part after '@'."""
        assert matcher.match(['ops@mail.acme.com']) is None

    def test_empty_directory(self):
        assert ClientMatcher(ClientDirectory([])).match(['jane@acme.com']) is None
