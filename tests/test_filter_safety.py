#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for filter_safety.py

Covers:
- is_client_label() / ownership classification
- Unresolvable labels and store errors classify as foreign
- Mutation helpers re-check ownership right before acting
- sync_client_filters(): create, keep, remove stale, never touch foreign

Run with: uv run pytest tests/test_filter_safety.py -v
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from client_matching import Client
from filter_safety import FilterSafetyGuard, client_filter_criteria, is_client_label
from workspace_store import FilterResource, YamlFilterStore

from conftest import FakeFilterStore

BRIEFINGS = ('Daily Briefing', 'Weekly Briefing')


@pytest.fixture
def filter_store():
    return FakeFilterStore(
        labels={
            'L1': 'Client: Acme',
            'L2': 'Client: Acme/Meeting Summaries',
            'L3': 'Daily Briefing',
            'L4': 'Receipts',
            'L5': 'Clients/Old',
        },
        filters=[
            FilterResource('f-acme', ['L1'], {'from': 'jane@acme.com OR @acme.com'}),
            FilterResource('f-summaries', ['L2'], {'subject': 'summary'}),
            FilterResource('f-brief', ['L3'], {'from': 'digest@news.io'}),
            FilterResource('f-receipts', ['L4'], {'from': 'billing@shop.com'}),
            FilterResource('f-ghost', ['L99'], {'from': 'ghost@x.io'}),
            FilterResource('f-mixed', ['L4', 'L1'], {'from': 'mixed@x.io'}),
        ],
    )


@pytest.fixture
def guard(filter_store, processing_log):
    return FilterSafetyGuard(filter_store, BRIEFINGS, processing_log)


# ============================================================================
# Classification
# ============================================================================

class TestIsClientLabel:
    """Tests for is_client_label()."""

    @pytest.mark.parametrize('name', [
        'Client: Acme',
        'Client: Acme Corp',
        'Client: Acme/Meeting Summaries',
        'Client: Acme/Meeting Agendas',
        'Client: Acme/Invoices',
    ])
    def test_client_labels(self, name):
        assert is_client_label(name)

    @pytest.mark.parametrize('name', [
        'Client:',
        'Client: ',
        'client: acme',
        'Clients/Old',
        'Receipts',
        '',
        None,
    ])
    def test_other_labels(self, name):
        assert not is_client_label(name)


class TestIsSystemOwned:
    """Tests for FilterSafetyGuard.is_system_owned()."""

    def test_client_label_filter(self, guard, filter_store):
        assert guard.is_system_owned(filter_store.get_filter('f-acme'))
        assert guard.is_system_owned(filter_store.get_filter('f-summaries'))

    def test_briefing_label_filter(self, guard, filter_store):
        assert guard.is_system_owned(filter_store.get_filter('f-brief'))

    def test_human_filter_is_foreign(self, guard, filter_store):
        assert not guard.is_system_owned(filter_store.get_filter('f-receipts'))

    def test_any_system_label_makes_it_owned(self, guard, filter_store):
        assert guard.is_system_owned(filter_store.get_filter('f-mixed'))

    def test_unknown_label_id_is_foreign(self, guard, filter_store):
        assert not guard.is_system_owned(filter_store.get_filter('f-ghost'))

    def test_store_error_is_foreign(self, guard, filter_store):
        filter_store.fail_labels = True
        assert not guard.is_system_owned(filter_store.get_filter('f-acme'))

    def test_no_labels_or_none(self, guard):
        assert not guard.is_system_owned(FilterResource('f', [], {}))
        assert not guard.is_system_owned(None)

    def test_briefing_labels_are_configurable(self, filter_store):
        guard = FilterSafetyGuard(filter_store, briefing_labels=())
        assert not guard.is_system_owned(filter_store.get_filter('f-brief'))


# ============================================================================
# Mutations
# ============================================================================

class TestDeleteFilter:
    """Tests for FilterSafetyGuard.delete_filter()."""

    def test_deletes_system_owned(self, guard, filter_store):
        assert guard.delete_filter('f-acme') is True
        assert filter_store.deleted_filters == ['f-acme']

    def test_refuses_foreign_without_touching_store(self, guard, filter_store, store):
        assert guard.delete_filter('f-receipts') is False
        assert filter_store.deleted_filters == []
        rows = store.list('processing_log')
        assert rows[-1]['status'] == 'warning'
        assert 'f-receipts' in rows[-1]['details']

    def test_refuses_missing_filter(self, guard, filter_store):
        assert guard.delete_filter('nope') is False
        assert filter_store.deleted_filters == []

    def test_reclassifies_at_mutation_time(self, guard, filter_store):
        """Ownership decided earlier does not carry over if the filter changed."""
        assert guard.is_system_owned(filter_store.get_filter('f-acme'))
        # a human retargets the filter to their own label in between
        filter_store.filters['f-acme'] = FilterResource('f-acme', ['L4'], {'from': 'jane@acme.com'})
        assert guard.delete_filter('f-acme') is False
        assert filter_store.deleted_filters == []

    def test_store_error_at_mutation_time(self, guard, filter_store):
        filter_store.fail_labels = True
        assert guard.delete_filter('f-acme') is False
        assert filter_store.deleted_filters == []


class TestOtherMutations:
    """Tests for create_filter(), replace_filter() and delete_label()."""

    def test_create_filter_for_client_label(self, guard, filter_store):
        filter_id = guard.create_filter({'from': '@globex.io'}, 'Client: Globex')
        assert filter_id is not None
        created = filter_store.get_filter(filter_id)
        assert filter_store.labels[created.label_ids[0]] == 'Client: Globex'

    def test_create_filter_for_foreign_label_refused(self, guard, filter_store):
        assert guard.create_filter({'from': 'x@y.io'}, 'Receipts') is None
        assert len(filter_store.filters) == 6

    def test_replace_filter(self, guard, filter_store):
        new_id = guard.replace_filter('f-acme', {'from': '@acme.com'}, 'Client: Acme')
        assert new_id is not None
        assert 'f-acme' in filter_store.deleted_filters
        assert filter_store.get_filter(new_id).criteria == {'from': '@acme.com'}

    def test_replace_foreign_filter_refused(self, guard, filter_store):
        assert guard.replace_filter('f-receipts', {'from': '@acme.com'}, 'Client: Acme') is None
        assert filter_store.deleted_filters == []

    def test_delete_label(self, guard, filter_store):
        assert guard.delete_label('Client: Acme/Meeting Summaries') is True
        assert filter_store.deleted_labels == ['L2']

    def test_delete_foreign_label_refused(self, guard, filter_store):
        assert guard.delete_label('Receipts') is False
        assert guard.delete_label('Clients/Old') is False
        assert filter_store.deleted_labels == []


# ============================================================================
# sync_client_filters()
# ============================================================================

class TestSyncClientFilters:
    """Tests for the filter sync supplement."""

    def test_creates_labels_and_filter_for_new_client(self, guard, filter_store):
        globex = Client.from_record({'name': 'Globex', 'contacts': ['hank@globex.io'], 'domains': ['globex.io'],
                                     'setup_complete': True})
        report = guard.sync_client_filters([globex])

        assert set(report.created_labels) == {
            'Client: Globex', 'Client: Globex/Meeting Summaries', 'Client: Globex/Meeting Agendas',
        }
        assert len(report.created_filters) == 1
        created = filter_store.get_filter(report.created_filters[0])
        assert created.criteria == {'from': 'hank@globex.io OR @globex.io'}

    def test_keeps_matching_filter_and_removes_stale(self, guard, filter_store):
        acme = Client.from_record({'name': 'Acme', 'contacts': ['jane@acme.com'], 'domains': ['acme.com'],
                                   'setup_complete': True})
        filter_store.filters['f-acme-old'] = FilterResource('f-acme-old', ['L1'], {'from': 'old@acme.com'})

        report = guard.sync_client_filters([acme])

        assert report.deleted_filters == ['f-mixed', 'f-acme-old']
        assert report.created_filters == []
        assert 'f-acme' in filter_store.filters
        # foreign, briefing and sub-label filters untouched
        for kept in ('f-receipts', 'f-brief', 'f-summaries', 'f-ghost'):
            assert kept in filter_store.filters

    def test_incomplete_clients_skipped(self, guard, filter_store):
        pending = Client.from_record({'name': 'Pending', 'domains': ['pending.io'], 'setup_complete': False})
        report = guard.sync_client_filters([pending])
        assert report.created_labels == []
        assert report.created_filters == []

    def test_filter_of_client_in_setup_kept(self, acme, globex, processing_log):
        store = FakeFilterStore(
            labels={'L1': 'Client: Acme', 'L2': 'Client: Globex'},
            filters=[
                FilterResource('f-acme', ['L1'], {'from': 'jane@acme.com OR @acme.com'}),
                FilterResource('f-globex', ['L2'], {'from': 'hank@globex.io'}),
            ],
        )
        guard = FilterSafetyGuard(store, BRIEFINGS, processing_log)

        report = guard.sync_client_filters([acme, globex])

        assert report.deleted_filters == []
        assert report.created_filters == []
        assert 'f-globex' in store.filters

    def test_filter_of_client_without_routing_kept(self, processing_log):
        bare = Client.from_record({'name': 'Initech', 'setup_complete': True})
        store = FakeFilterStore(
            labels={'L1': 'Client: Initech'},
            filters=[FilterResource('f-initech', ['L1'], {'from': 'bill@initech.com'})],
        )
        guard = FilterSafetyGuard(store, BRIEFINGS, processing_log)

        report = guard.sync_client_filters([bare])

        assert report.deleted_filters == []
        assert 'f-initech' in store.filters

    def test_filter_of_client_removed_from_directory_deleted(self, acme, processing_log):
        store = FakeFilterStore(
            labels={'L1': 'Client: Acme', 'L2': 'Client: Gone'},
            filters=[
                FilterResource('f-acme', ['L1'], {'from': 'jane@acme.com OR @acme.com'}),
                FilterResource('f-gone', ['L2'], {'from': 'x@gone.io'}),
            ],
        )
        guard = FilterSafetyGuard(store, BRIEFINGS, processing_log)

        report = guard.sync_client_filters([acme])

        assert report.deleted_filters == ['f-gone']

    def test_client_filter_criteria(self, acme):
        assert client_filter_criteria(acme) == {'from': 'jane@acme.com OR @acme.com'}


class TestWithYamlStore:
    """The guard against the file-backed store."""

    def test_sync_round_trip(self, tmp_path, acme):
        store = YamlFilterStore(tmp_path / 'mail_filters.yaml')
        guard = FilterSafetyGuard(store, BRIEFINGS)

        first = guard.sync_client_filters([acme])
        second = guard.sync_client_filters([acme])

        assert len(first.created_filters) == 1
        assert second.created_filters == []
        assert second.deleted_filters == []
        assert len(store.list_filters()) == 1
        assert sorted(store.list_labels().values()) == [
            'Client: Acme', 'Client: Acme/Meeting Agendas', 'Client: Acme/Meeting Summaries',
        ]
