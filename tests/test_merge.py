"""
Tests for the coinbase merge policy.
"""

import pytest

from stakecanary.errors import ReconciliationConflict
from stakecanary.models import ZERO_ADDRESS
from stakecanary.reconciler import merge_mappings

from conftest import A1, A2, C1, C2, C9, mapping


def as_dict(*mappings):
    return {m.key: m for m in mappings}


class TestMergeRules:
    """One test per merge rule."""

    def test_unknown_attester_is_inserted_as_new(self):
        outcome = merge_mappings({}, [mapping(A1, C1, 100)])

        assert outcome.merged[A1].coinbase_address == C1
        assert outcome.new_count == 1
        assert outcome.updated_count == 0

    def test_same_coinbase_newer_block_is_updated(self):
        outcome = merge_mappings(as_dict(mapping(A1, C1, 100)), [mapping(A1, C1, 150)])

        assert outcome.merged[A1].block_number == 150
        assert outcome.updated_count == 1
        assert outcome.new_count == 0

    def test_same_coinbase_older_or_equal_block_is_ignored(self):
        existing = as_dict(mapping(A1, C1, 150))

        for block in (100, 150):
            outcome = merge_mappings(existing, [mapping(A1, C1, block)])
            assert outcome.merged[A1].block_number == 150
            assert outcome.updated_count == 0

    def test_same_coinbase_compared_case_insensitively(self):
        outcome = merge_mappings(as_dict(mapping(A1, C1, 100)), [mapping("0x" + A1[2:].upper(), "0x" + C1[2:].upper(), 150)])

        assert len(outcome.merged) == 1
        assert outcome.merged[A1].block_number == 150

    def test_cached_zero_address_is_overridden(self):
        outcome = merge_mappings(as_dict(mapping(A1, ZERO_ADDRESS, 100)), [mapping(A1, C2, 150)])

        assert outcome.merged[A1].coinbase_address == C2
        assert outcome.merged[A1].block_number == 150
        assert outcome.updated_count == 1

    def test_cached_zero_address_overridden_even_by_older_block(self):
        outcome = merge_mappings(as_dict(mapping(A1, ZERO_ADDRESS, 200)), [mapping(A1, C2, 150)])

        assert outcome.merged[A1].coinbase_address == C2

    def test_incoming_zero_address_never_replaces_real_coinbase(self):
        existing = as_dict(mapping(A1, C1, 100))
        outcome = merge_mappings(existing, [mapping(A1, ZERO_ADDRESS, 150)])

        assert outcome.merged[A1] == existing[A1]
        assert outcome.updated_count == 0
        assert outcome.new_count == 0

    def test_different_non_zero_coinbases_conflict(self):
        with pytest.raises(ReconciliationConflict) as exc_info:
            merge_mappings(as_dict(mapping(A1, C1, 100)), [mapping(A1, C9, 150)])

        err = exc_info.value
        assert err.attester == A1
        assert (err.existing_coinbase, err.existing_block) == (C1, 100)
        assert (err.incoming_coinbase, err.incoming_block) == (C9, 150)
        assert C1 in str(err) and C9 in str(err)


class TestMergeProperties:

    def test_existing_dict_is_not_mutated(self):
        existing = as_dict(mapping(A1, C1, 100))
        snapshot = dict(existing)

        merge_mappings(existing, [mapping(A1, C1, 150), mapping(A2, C2, 120)])

        assert existing == snapshot

    def test_conflict_aborts_whole_merge(self):
        existing = as_dict(mapping(A1, C1, 100))

        with pytest.raises(ReconciliationConflict):
            merge_mappings(existing, [mapping(A2, C2, 120), mapping(A1, C9, 150)])

        assert A2 not in existing

    def test_attester_inserted_then_refreshed_counts_as_new_only(self):
        outcome = merge_mappings({}, [mapping(A1, ZERO_ADDRESS, 100), mapping(A1, C1, 150)])

        assert outcome.merged[A1].coinbase_address == C1
        assert outcome.new_count == 1
        assert outcome.updated_count == 0

    @pytest.mark.parametrize("first,second", [
        ([mapping(A1, C1, 100)], [mapping(A1, C1, 150)]),
        ([mapping(A1, ZERO_ADDRESS, 100)], [mapping(A1, C2, 150)]),
        ([mapping(A1, C1, 100), mapping(A2, ZERO_ADDRESS, 90)], [mapping(A2, C2, 95)]),
    ])
    def test_order_independent_without_conflicts(self, first, second):
        ab = merge_mappings(merge_mappings({}, first).merged, second).merged
        ba = merge_mappings(merge_mappings({}, second).merged, first).merged

        assert ab == ba

    def test_conflict_detection_is_symmetric(self):
        a = [mapping(A1, C1, 100)]
        b = [mapping(A1, C9, 150)]

        with pytest.raises(ReconciliationConflict) as ab:
            merge_mappings(merge_mappings({}, a).merged, b)
        with pytest.raises(ReconciliationConflict) as ba:
            merge_mappings(merge_mappings({}, b).merged, a)

        values_ab = {(ab.value.existing_coinbase, ab.value.existing_block), (ab.value.incoming_coinbase, ab.value.incoming_block)}
        values_ba = {(ba.value.existing_coinbase, ba.value.existing_block), (ba.value.incoming_coinbase, ba.value.incoming_block)}
        assert values_ab == values_ba == {(C1, 100), (C9, 150)}
