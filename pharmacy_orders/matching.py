"""
matching.py — Prescription Matching Engine

Turns the drug mentions extracted from a prescription plus a set of pharmacy
inventory snapshots into one Selection per distinct drug name, and applies the
customer's edits to those selections.

All functions are pure: they never touch the network and return new
MatchingResult instances instead of mutating the one passed in.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from . import config
from .exceptions import NotFoundError, ValidationError
from .models import (
    ExtractedDrugMention,
    MatchingResult,
    PharmacyInventorySnapshot,
    PharmacyOption,
    Selection,
)

log = logging.getLogger(__name__)


def dedupe_mentions(mentions: Iterable[ExtractedDrugMention]) -> List[ExtractedDrugMention]:
    """
    Drops case-insensitive duplicates, keeping the first-seen spelling and order.

    Names are trimmed of surrounding whitespace before comparing, and the kept
    spelling is the trimmed one; names that are blank after trimming are dropped.
    """
    unique = []
    seen = set()
    for mention in mentions:
        name = mention.name.strip()
        if not name:
            continue
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(ExtractedDrugMention(name=name))
    return unique


def find_first_stocked(drug_name: str, pharmacies: List[PharmacyInventorySnapshot]):
    """
    Returns (pharmacy, stock_item) for the first pharmacy, in the given order, that
    stocks the drug with a positive quantity; (None, None) if there is none.
    """
    for pharmacy in pharmacies:
        item = pharmacy.find_by_name(drug_name, in_stock_only=True)
        if item is not None:
            return pharmacy, item
    return None, None


def create_selections_from_mentions(
        mentions: Iterable[ExtractedDrugMention],
        pharmacies: List[PharmacyInventorySnapshot],
        now: Optional[datetime] = None,
        ttl_seconds: float = config.MATCH_RESULT_TTL_SECONDS,
        extracted_text: str = "",
) -> MatchingResult:
    """
    Builds the initial selection model for one prescription.

    Args:
        mentions: Drug mentions from OCR, possibly with case-variant duplicates.
        pharmacies: Candidate pharmacies in preference order.
        now: Reference time for createdAt / expiresAt (defaults to current UTC time).
        ttl_seconds: How long the result stays valid for submission.
        extracted_text: Raw OCR text, kept for display.

    Returns:
        MatchingResult: One Selection (quantity 1) per drug name that some pharmacy
        has in stock; the remaining names are listed as unavailable.
    """
    now = now or datetime.now(timezone.utc)
    unique = dedupe_mentions(mentions)

    selections = {}
    unavailable = []
    for mention in unique:
        pharmacy, item = find_first_stocked(mention.name, pharmacies)
        if pharmacy is None:
            unavailable.append(mention.name)
            continue
        selections[mention.name] = Selection(
            pharmacyId=pharmacy.pharmacyId,
            medicineId=item.medicineId,
            quantity=1,
        )

    log.info(
        f"Matched {len(selections)} of {len(unique)} medicines against "
        f"{len(pharmacies)} pharmacies ({len(unavailable)} unavailable)."
    )

    return MatchingResult(
        extractedText=extracted_text,
        mentions=unique,
        pharmacies=list(pharmacies),
        selections=selections,
        unavailable=unavailable,
        createdAt=now,
        expiresAt=now + timedelta(seconds=ttl_seconds),
    )


def _selection_key(result: MatchingResult, drug_name: str) -> str:
    wanted = drug_name.strip().lower()
    for key in result.selections:
        if key.lower() == wanted:
            return key
    for name in result.unavailable:
        if name.lower() == wanted:
            raise ValidationError(
                f"'{name}' is not available in any partner pharmacy.",
                code='MEDICINE_UNAVAILABLE',
                detail={'drugName': name},
            )
    raise NotFoundError(
        f"No selection for medicine '{drug_name}'.",
        code='SELECTION_NOT_FOUND',
        detail={'drugName': drug_name},
    )


def update_selection(
        result: MatchingResult,
        drug_name: str,
        pharmacy_id: Optional[str] = None,
        quantity: Optional[int] = None,
) -> MatchingResult:
    """
    Applies a customer edit to one selection and returns the new result.

    Changing the pharmacy re-resolves the medicineId against that pharmacy's stock
    for the same drug name. If it does not carry the drug, medicineId becomes empty
    and quantity is reset to 1, even when the same edit also sends a quantity.
    Otherwise quantity is stored as given (>= 1); the upper bound is checked at
    submission.

    Raises:
        NotFoundError: Unknown drug name or pharmacy.
        ValidationError: Drug is unavailable everywhere, or quantity < 1.
    """
    key = _selection_key(result, drug_name)
    current = result.selections[key]
    changes = {}

    if pharmacy_id is not None and pharmacy_id != current.pharmacyId:
        pharmacy = result.pharmacy(pharmacy_id)
        if pharmacy is None:
            raise NotFoundError(
                f"Pharmacy {pharmacy_id} is not part of this prescription's candidates.",
                code='PHARMACY_NOT_FOUND',
                detail={'pharmacyId': pharmacy_id},
            )
        item = pharmacy.find_by_name(key)
        changes['pharmacyId'] = pharmacy_id
        if item is None:
            changes['medicineId'] = ""
            changes['quantity'] = 1
        else:
            changes['medicineId'] = item.medicineId

    if quantity is not None and changes.get('medicineId') != "":
        if quantity < 1:
            raise ValidationError(
                f"Quantity for '{key}' must be at least 1, got {quantity}.",
                code='INVALID_QUANTITY',
                detail={'drugName': key, 'quantity': quantity},
            )
        changes['quantity'] = quantity

    if not changes:
        return result

    selections = dict(result.selections)
    selections[key] = current.model_copy(update=changes)
    return result.model_copy(update={'selections': selections})


def pharmacy_options(result: MatchingResult, drug_name: str) -> List[PharmacyOption]:
    """
    Lists every candidate pharmacy carrying the drug, with its price and stock.

    An empty list means the drug is shown read-only as "not available".
    """
    options = []
    for pharmacy in result.pharmacies:
        item = pharmacy.find_by_name(drug_name)
        if item is None:
            continue
        options.append(PharmacyOption(
            pharmacyId=pharmacy.pharmacyId,
            pharmacyName=pharmacy.pharmacyName,
            medicineId=item.medicineId,
            unitPrice=item.unitPrice,
            stockQuantity=item.stockQuantity,
        ))
    return options
