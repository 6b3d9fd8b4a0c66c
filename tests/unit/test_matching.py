"""
Unit tests for the matching engine and selection edits.

Pure functions, no collaborators:
1. case-insensitive deduplication, first-seen spelling
2. first in-stock pharmacy wins, sold-out items are never bound
3. selection edits return new results and re-resolve medicine ids
"""
from datetime import timedelta

import pytest

from pharmacy_orders.exceptions import NotFoundError, ValidationError
from pharmacy_orders.matching import (
    create_selections_from_mentions,
    dedupe_mentions,
    pharmacy_options,
    update_selection,
)
from pharmacy_orders.models import Selection

from conftest import T0, mentions, snapshot


class TestDedupeMentions:

    def test_keeps_first_seen_spelling_and_order(self):
        unique = dedupe_mentions(mentions('paracetamol', 'Amoxicillin', 'PARACETAMOL', 'amoxicillin', 'Ibuprofen'))
        assert [m.name for m in unique] == ['paracetamol', 'Amoxicillin', 'Ibuprofen']

    def test_blank_names_are_ignored(self):
        assert dedupe_mentions(mentions('', '  ', 'Ibuprofen')) == mentions('Ibuprofen')

    def test_surrounding_whitespace_is_trimmed_before_comparing(self):
        unique = dedupe_mentions(mentions(' Paracetamol ', 'paracetamol\n', 'Ibuprofen'))
        assert [m.name for m in unique] == ['Paracetamol', 'Ibuprofen']


class TestCreateSelections:

    def test_scenario_duplicate_and_unavailable(self):
        pharmacy = snapshot('ph-1', 'City Care', ('med-1', 'Paracetamol', 5.0, 10))
        result = create_selections_from_mentions(
            mentions('Paracetamol', 'paracetamol', 'Amoxicillin'), [pharmacy], now=T0)

        assert result.selections == {
            'Paracetamol': Selection(pharmacyId='ph-1', medicineId='med-1', quantity=1),
        }
        assert result.unavailable == ['Amoxicillin']
        assert [m.name for m in result.mentions] == ['Paracetamol', 'Amoxicillin']

    def test_first_pharmacy_in_given_order_wins(self, pharmacies):
        result = create_selections_from_mentions(mentions('paracetamol'), pharmacies, now=T0)
        assert result.selections['paracetamol'].pharmacyId == 'ph-1'

        reordered = [pharmacies[1], pharmacies[0], pharmacies[2]]
        result = create_selections_from_mentions(mentions('paracetamol'), reordered, now=T0)
        assert result.selections['paracetamol'].medicineId == 'med-2-para'

    def test_sold_out_stock_is_never_bound(self, pharmacies):
        result = create_selections_from_mentions(mentions('Cetirizine'), pharmacies, now=T0)
        assert result.selections['Cetirizine'] == Selection(pharmacyId='ph-2', medicineId='med-2-cet', quantity=1)

    def test_sold_out_everywhere_is_unavailable(self):
        pharmacy = snapshot('ph-1', 'City Care', ('med-1', 'Cetirizine', 3.5, 0))
        result = create_selections_from_mentions(mentions('Cetirizine'), [pharmacy], now=T0)
        assert result.selections == {}
        assert result.unavailable == ['Cetirizine']

    def test_is_deterministic(self, pharmacies):
        names = mentions('Paracetamol', 'cetirizine', 'Ibuprofen', 'PARACETAMOL', 'Aspirin')
        first = create_selections_from_mentions(names, pharmacies, now=T0)
        second = create_selections_from_mentions(names, pharmacies, now=T0)
        assert first.model_dump(exclude={'resultId'}) == second.model_dump(exclude={'resultId'})
        assert first.resultId != second.resultId
        assert list(first.selections) == ['Paracetamol', 'cetirizine', 'Ibuprofen']

    def test_expiry_follows_ttl(self, pharmacies):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0, ttl_seconds=180)
        assert result.createdAt == T0
        assert result.expiresAt == T0 + timedelta(seconds=180)
        assert not result.is_expired(T0 + timedelta(seconds=179))
        assert result.is_expired(T0 + timedelta(seconds=180))

    def test_no_pharmacies_means_everything_unavailable(self):
        result = create_selections_from_mentions(mentions('Paracetamol'), [], now=T0)
        assert result.selections == {}
        assert result.unavailable == ['Paracetamol']


class TestUpdateSelection:

    @pytest.fixture
    def result(self, pharmacies):
        return create_selections_from_mentions(mentions('Paracetamol', 'Amoxicillin'), pharmacies, now=T0)

    def test_change_pharmacy_rebinds_medicine_and_keeps_quantity(self, result):
        result = update_selection(result, 'Paracetamol', quantity=3)
        updated = update_selection(result, 'Paracetamol', pharmacy_id='ph-2')
        assert updated.selections['Paracetamol'] == Selection(pharmacyId='ph-2', medicineId='med-2-para', quantity=3)

    def test_change_to_pharmacy_without_the_drug_clears_medicine(self, result):
        result = update_selection(result, 'Paracetamol', quantity=4)
        updated = update_selection(result, 'Paracetamol', pharmacy_id='ph-3')
        assert updated.selections['Paracetamol'] == Selection(pharmacyId='ph-3', medicineId='', quantity=1)

    def test_quantity_sent_with_a_pharmacy_lacking_the_drug_is_ignored(self, result):
        updated = update_selection(result, 'Paracetamol', pharmacy_id='ph-3', quantity=5)
        assert updated.selections['Paracetamol'] == Selection(pharmacyId='ph-3', medicineId='', quantity=1)

    def test_quantity_sent_with_a_pharmacy_change_is_applied(self, result):
        updated = update_selection(result, 'Paracetamol', pharmacy_id='ph-2', quantity=2)
        assert updated.selections['Paracetamol'] == Selection(pharmacyId='ph-2', medicineId='med-2-para', quantity=2)

    def test_returns_new_result_and_leaves_original_untouched(self, result):
        updated = update_selection(result, 'Paracetamol', quantity=7)
        assert updated.selections['Paracetamol'].quantity == 7
        assert result.selections['Paracetamol'].quantity == 1

    def test_quantity_has_no_upper_bound(self, result):
        updated = update_selection(result, 'Paracetamol', quantity=500)
        assert updated.selections['Paracetamol'].quantity == 500

    def test_lookup_is_case_insensitive(self, result):
        updated = update_selection(result, 'PARACETAMOL', quantity=2)
        assert updated.selections['Paracetamol'].quantity == 2

    def test_quantity_below_one_rejected(self, result):
        with pytest.raises(ValidationError) as exc_info:
            update_selection(result, 'Paracetamol', quantity=0)
        assert exc_info.value.code == 'INVALID_QUANTITY'

    def test_unavailable_drug_is_read_only(self, result):
        with pytest.raises(ValidationError) as exc_info:
            update_selection(result, 'amoxicillin', quantity=2)
        assert exc_info.value.code == 'MEDICINE_UNAVAILABLE'

    def test_unknown_drug(self, result):
        with pytest.raises(NotFoundError):
            update_selection(result, 'Aspirin', quantity=2)

    def test_unknown_pharmacy(self, result):
        with pytest.raises(NotFoundError) as exc_info:
            update_selection(result, 'Paracetamol', pharmacy_id='ph-99')
        assert exc_info.value.code == 'PHARMACY_NOT_FOUND'


class TestPharmacyOptions:

    def test_lists_every_pharmacy_carrying_the_drug(self, pharmacies):
        result = create_selections_from_mentions(mentions('Cetirizine'), pharmacies, now=T0)
        options = pharmacy_options(result, 'cetirizine')
        assert [(o.pharmacyId, o.unitPrice, o.stockQuantity) for o in options] == [
            ('ph-1', 3.5, 0),
            ('ph-2', 3.0, 25),
        ]

    def test_empty_for_unavailable_drug(self, pharmacies):
        result = create_selections_from_mentions(mentions('Amoxicillin'), pharmacies, now=T0)
        assert pharmacy_options(result, 'Amoxicillin') == []
