"""
Purchase Ledger - per-contact purchase records

Handles:
- Purchase creation with amount validation
- Listing (unparsable entries kept as raw, never dropped)
- In-place status updates after conversion reporting
- Bulk "has purchases" checks for dashboards
- Conversion reporting to the Conversions API (when enabled)
"""

import json
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..errors import ConflictError, NotFoundError, StorageUnavailableError, ValidationError
from ..models import Purchase, PurchaseEntry, PurchaseStatus, RawPurchase
from ..storage import KVStore, KeySpace, normalize_id

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "ARS"
DEFAULT_SOURCE = "manual"
UPDATE_ATTEMPTS = 3


def parse_amount(value: Any) -> float:
    """
    Validate a purchase amount.

    Accepts numbers and numeric strings; booleans, NaN, infinities and
    values <= 0 are rejected with INVALID_AMOUNT.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError("INVALID_AMOUNT")
    if isinstance(value, str):
        value = value.strip()
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("INVALID_AMOUNT")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("INVALID_AMOUNT")
    return amount


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PurchaseLedger:
    """
    Owns ``purchases:{id}`` lists (most recent first).

    A purchase is written once as ``pending``; its status fields are
    rewritten at most once, after the conversion report.
    """

    def __init__(
        self,
        store: KVStore,
        keys: Optional[KeySpace] = None,
        attribution=None,
        capi_client=None,
        reporting_enabled: bool = False,
    ):
        """
        Initialize purchase ledger.

        Args:
            store: Key-value store
            keys: Key layout
            attribution: AttributionService used to resolve click ids
            capi_client: MetaCAPIClient (None disables reporting)
            reporting_enabled: Report purchases to the Conversions API
        """
        self.store = store
        self.keys = keys or KeySpace()
        self.attribution = attribution
        self.capi_client = capi_client
        self.reporting_enabled = reporting_enabled

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self,
        contact_id: str,
        amount: Any,
        currency: Optional[str] = None,
        source: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Purchase:
        """
        Record a purchase.

        Args:
            contact_id: Contact id (normalized before use)
            amount: Positive finite number (numeric strings accepted)
            currency: Currency code (default "ARS")
            source: Where the purchase was entered (default "manual")
            meta: Free-form metadata

        Returns:
            The stored purchase, status ``pending``
        """
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")
        value = parse_amount(amount)

        purchase = Purchase(
            id=str(uuid.uuid4()),
            contact_id=cid,
            amount=value,
            currency=currency if isinstance(currency, str) and currency else DEFAULT_CURRENCY,
            source=source if isinstance(source, str) and source else DEFAULT_SOURCE,
            created_at=_now_iso(),
            meta=meta if isinstance(meta, dict) else {},
            status=PurchaseStatus.PENDING,
        )

        await self.store.lpush(self.keys.purchases(cid), purchase.to_json())
        logger.info(f"Purchase {purchase.id} recorded for {cid}: {value} {purchase.currency}")
        return purchase

    async def update_status(
        self,
        contact_id: str,
        purchase_id: str,
        status: PurchaseStatus,
        error: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Purchase:
        """
        Rewrite the status fields of one purchase in place.

        Args:
            contact_id: Contact id
            purchase_id: Purchase id
            status: New status (ok / error)
            error: Last error message
            extra: Additional fields to store (e.g. ``ctwa_clid``)

        Returns:
            The updated purchase
        """
        cid = normalize_id(contact_id)
        key = self.keys.purchases(cid)

        for _ in range(UPDATE_ATTEMPTS):
            located = await self._locate(key, purchase_id)
            if located is None:
                break
            index, raw, data = located

            if data.get("capiStatus", PurchaseStatus.PENDING.value) != PurchaseStatus.PENDING.value:
                raise ConflictError(
                    "PURCHASE_ALREADY_REPORTED",
                    f"Purchase {purchase_id} already has status {data.get('capiStatus')}",
                )

            data.update(extra or {})
            data["capiStatus"] = PurchaseStatus(status).value
            data["capiLastError"] = error
            updated = Purchase.model_validate(data)

            if await self.store.lset_if(key, index, raw, updated.to_json()):
                return updated
            logger.info(f"Purchase list {key} changed while updating {purchase_id}, retrying")
        else:
            raise ConflictError(
                "PURCHASE_UPDATE_CONFLICT",
                f"Purchase {purchase_id} kept moving, gave up after {UPDATE_ATTEMPTS} attempts",
            )

        raise NotFoundError("PURCHASE_NOT_FOUND", f"Purchase {purchase_id} not found for {cid}")

    async def _locate(self, key: str, purchase_id: str) -> Optional[Tuple[int, str, Dict[str, Any]]]:
        """Position, stored text and decoded body of a purchase, or None."""
        for index, raw in enumerate(await self.store.lrange(key, 0, -1)):
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("id") == purchase_id:
                return index, raw, data
        return None

    # =========================================================================
    # Reads
    # =========================================================================

    async def list(self, contact_id: str, limit: int = 50) -> List[PurchaseEntry]:
        """
        Most recent purchases of a contact.

        Entries that are not valid purchases come back as ``RawPurchase``.
        """
        cid = normalize_id(contact_id)
        if not cid:
            raise ValidationError("MISSING_CONTACT_ID")
        try:
            entries = await self.store.lrange(self.keys.purchases(cid), 0, max(1, limit) - 1)
        except StorageUnavailableError as e:
            logger.warning(f"Could not read purchases for {cid}: {e}")
            return []

        out: List[PurchaseEntry] = []
        for raw in entries:
            try:
                out.append(Purchase.model_validate(json.loads(raw)))
            except (ValueError, PydanticValidationError):
                out.append(RawPurchase(raw=raw))
        return out

    async def has_purchases(self, contact_ids: Iterable[str]) -> Dict[str, bool]:
        """
        Whether each contact has at least one purchase.

        Keys of the result are normalized ids (the raw id when it has no
        digits). Failing keys map to False.
        """
        result: Dict[str, bool] = {}
        for raw_id in contact_ids:
            cid = normalize_id(raw_id)
            if not cid:
                result[str(raw_id)] = False
                continue
            try:
                result[cid] = bool(await self.store.lrange(self.keys.purchases(cid), 0, 0))
            except StorageUnavailableError as e:
                logger.warning(f"Could not read purchases for {cid}: {e}")
                result[cid] = False
        return result

    # =========================================================================
    # Conversion reporting
    # =========================================================================

    async def report_conversion(
        self,
        purchase: Purchase,
        click_id: Optional[str] = None,
    ) -> Purchase:
        """
        Report a purchase as a Purchase event and record the outcome.

        Does nothing (returns the purchase unchanged) unless reporting is
        enabled and a CAPI client is configured.

        Args:
            purchase: A pending purchase
            click_id: Click id from the request, resolved from the contact
                when absent
        """
        if not self.reporting_enabled:
            return purchase
        if self.capi_client is None:
            logger.warning("CONFIGURATION_MISSING: conversion reporting enabled without a CAPI client")
            return purchase

        clid = click_id
        if not clid and self.attribution is not None:
            clid = await self.attribution.resolve_for_contact(purchase.contact_id)

        result = await self.capi_client.send_purchase_event(
            value=purchase.amount,
            phone=purchase.contact_id,
            click_id=clid,
            currency=purchase.currency,
            event_id=purchase.id,
        )

        if result.get("error"):
            logger.error(f"Conversion report failed for purchase {purchase.id}: {result['error']}")
            status, error = PurchaseStatus.ERROR, str(result["error"])
        else:
            status, error = PurchaseStatus.OK, None

        return await self.update_status(
            purchase.contact_id,
            purchase.id,
            status,
            error=error,
            extra={"ctwa_clid": clid},
        )


# Convenience function
def get_purchase_ledger(store: KVStore, keys: Optional[KeySpace] = None, **kwargs) -> PurchaseLedger:
    """Get a purchase ledger instance."""
    return PurchaseLedger(store, keys, **kwargs)
