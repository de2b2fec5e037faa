"""
Dual Confirmation Ledger.

Each of the two routers involved in a transfer keeps one ConfirmationRecord
for it. reconcile() folds the two into a DualConfirmationView:

    failed             either record is failed or rolled_back
    dual_confirmed     both records confirmed
    partial_confirmed  exactly one record confirmed
    pending            otherwise

Records are keyed by (transfer_id, router_id) and upserted, so concurrent
confirmations from both legs commute. A record that has left `pending` only
moves again through an explicit rollback.
"""

import hashlib
import hmac
import logging
import threading
import time
import uuid
from typing import Optional, Dict, List, Any, Callable, Tuple, Union

from .core import (
    ConfirmationRecord,
    ConfirmationStatus,
    DualConfirmationView,
    DualStatus,
)
from .errors import (
    AlreadyTerminal,
    ConfirmationLimitExceeded,
    ConfirmationNotFound,
    DuplicateConfirmation,
)

log = logging.getLogger(__name__)

MAX_ROUTERS_PER_TRANSFER = 2

_BAD_STATUSES = (ConfirmationStatus.FAILED, ConfirmationStatus.ROLLED_BACK)


class ConfirmationLedger:
    """Per-router confirmation records with a reconciled dual view."""

    def __init__(self, router_id: str = "", signing_key: bytes = b"",
                 clock: Callable[[], float] = time.time):
        self.router_id = router_id
        self._signing_key = signing_key or router_id.encode()
        self._clock = clock
        self._records: Dict[Tuple[str, str], ConfirmationRecord] = {}
        self._by_id: Dict[str, Tuple[str, str]] = {}
        self._by_user: Dict[str, set] = {}
        self._by_asset: Dict[str, set] = {}
        self._lock = threading.Lock()

    # -- signatures -----------------------------------------------------------

    def _payload(self, record: ConfirmationRecord) -> bytes:
        amount = record.metadata.get("amount", "")
        return (f"{record.transfer_id}|{record.router_id}|{record.status.value}|"
                f"{amount}|{record.timestamp:.6f}").encode()

    def sign(self, record: ConfirmationRecord) -> str:
        key = self._signing_key + b":" + record.router_id.encode()
        return hmac.new(key, self._payload(record), hashlib.sha256).hexdigest()

    def verify_signature(self, record: ConfirmationRecord) -> bool:
        return hmac.compare_digest(self.sign(record), record.signature)

    # -- writes ---------------------------------------------------------------

    def record(self, transfer_id: str, router_id: str,
               status: Union[ConfirmationStatus, str],
               metadata: Optional[Dict[str, Any]] = None) -> ConfirmationRecord:
        """Upsert the record for (transfer_id, router_id).

        Re-recording the current status is a no-op. A confirmed or failed
        record may only move on to rolled_back.
        """
        status = ConfirmationStatus(status)
        try:
            return self._record(transfer_id, router_id, status, metadata or {})
        except DuplicateConfirmation:
            log.debug(f"Duplicate confirmation {transfer_id}/{router_id}: {status.value}")
            return self.get_record(transfer_id, router_id)

    def _record(self, transfer_id: str, router_id: str, status: ConfirmationStatus,
                metadata: Dict[str, Any]) -> ConfirmationRecord:
        key = (transfer_id, router_id)
        with self._lock:
            existing = self._records.get(key)
            now = self._clock()

            if existing is None:
                routers = [r for (t, r) in self._records if t == transfer_id]
                if len(routers) >= MAX_ROUTERS_PER_TRANSFER:
                    raise ConfirmationLimitExceeded(
                        f"Transfer {transfer_id} already has confirmations from {routers}",
                        transfer_id=transfer_id,
                    )
                record = ConfirmationRecord(
                    confirmation_id=f"conf_{uuid.uuid4().hex[:12]}",
                    transfer_id=transfer_id,
                    router_id=router_id,
                    status=status,
                    timestamp=now,
                    signature="",
                    metadata=dict(metadata),
                    history=[{"status": status.value, "timestamp": now}],
                )
                if status == ConfirmationStatus.ROLLED_BACK:
                    record.rollback_reason = metadata.get("reason", "")
                    record.rollback_timestamp = now
                record.signature = self.sign(record)
                self._records[key] = record
                self._by_id[record.confirmation_id] = key
                self._index(record)
                log.info(f"Confirmation {record.confirmation_id}: {transfer_id}/{router_id} "
                         f"-> {status.value}")
                return record

            if existing.status == status:
                raise DuplicateConfirmation(f"{transfer_id}/{router_id} already {status.value}")

            if existing.status != ConfirmationStatus.PENDING:
                if status != ConfirmationStatus.ROLLED_BACK or \
                        existing.status == ConfirmationStatus.ROLLED_BACK:
                    raise AlreadyTerminal(
                        f"Confirmation {existing.confirmation_id} is {existing.status.value}",
                        confirmation_id=existing.confirmation_id,
                    )

            self._apply(existing, status, metadata, now, metadata.get("reason"))
            self._index(existing)
            return existing

    def _apply(self, record: ConfirmationRecord, status: ConfirmationStatus,
               metadata: Dict[str, Any], now: float, reason: Optional[str]):
        record.metadata.update({k: v for k, v in metadata.items() if k != "reason"})
        record.status = status
        record.timestamp = now
        record.history.append({"status": status.value, "timestamp": now,
                               **({"reason": reason} if reason else {})})
        if status == ConfirmationStatus.ROLLED_BACK:
            record.rollback_reason = reason or ""
            record.rollback_timestamp = now
        record.signature = self.sign(record)
        log.info(f"Confirmation {record.confirmation_id}: {record.transfer_id}/"
                 f"{record.router_id} -> {status.value}")

    def rollback(self, confirmation_id: str, reason: str) -> ConfirmationRecord:
        """Mark one record rolled_back, keeping its history."""
        with self._lock:
            key = self._by_id.get(confirmation_id)
            if key is None:
                raise ConfirmationNotFound(f"Confirmation {confirmation_id} not found",
                                           confirmation_id=confirmation_id)
            record = self._records[key]
            if record.status == ConfirmationStatus.ROLLED_BACK:
                raise AlreadyTerminal(f"Confirmation {confirmation_id} is already rolled back",
                                      confirmation_id=confirmation_id)
            self._apply(record, ConfirmationStatus.ROLLED_BACK, {}, self._clock(), reason)
        log.info(f"Confirmation rolled back: {confirmation_id}, reason: {reason}")
        return record

    # -- reads ----------------------------------------------------------------

    def reconcile(self, transfer_id: str) -> DualConfirmationView:
        with self._lock:
            records = {r: rec for (t, r), rec in self._records.items() if t == transfer_id}

        statuses = [rec.status for rec in records.values()]
        confirmed = statuses.count(ConfirmationStatus.CONFIRMED)
        if any(s in _BAD_STATUSES for s in statuses):
            status = DualStatus.FAILED
        elif confirmed >= MAX_ROUTERS_PER_TRANSFER:
            status = DualStatus.DUAL_CONFIRMED
        elif confirmed == 1:
            status = DualStatus.PARTIAL_CONFIRMED
        else:
            status = DualStatus.PENDING

        return DualConfirmationView(
            transfer_id=transfer_id,
            status=status,
            confirmations=records,
            timestamp=self._clock(),
        )

    def get(self, confirmation_id: str) -> ConfirmationRecord:
        with self._lock:
            key = self._by_id.get(confirmation_id)
            if key is None:
                raise ConfirmationNotFound(f"Confirmation {confirmation_id} not found",
                                           confirmation_id=confirmation_id)
            return self._records[key]

    def get_record(self, transfer_id: str, router_id: str) -> Optional[ConfirmationRecord]:
        with self._lock:
            return self._records.get((transfer_id, router_id))

    def records_for(self, transfer_id: str) -> List[ConfirmationRecord]:
        with self._lock:
            return [rec for (t, _), rec in self._records.items() if t == transfer_id]

    def all_records(self) -> List[ConfirmationRecord]:
        with self._lock:
            return list(self._records.values())

    # -- indexes / reporting ---------------------------------------------------

    def _index(self, record: ConfirmationRecord):
        user = record.metadata.get("from_account")
        asset = record.metadata.get("asset")
        if user:
            self._by_user.setdefault(user, set()).add(record.confirmation_id)
        if asset:
            self._by_asset.setdefault(asset, set()).add(record.confirmation_id)

    def _lookup(self, ids) -> List[ConfirmationRecord]:
        records = [self._records[self._by_id[cid]] for cid in ids if cid in self._by_id]
        return sorted(records, key=lambda r: r.timestamp)

    def get_user_transfers(self, account: str) -> List[ConfirmationRecord]:
        with self._lock:
            return self._lookup(self._by_user.get(account, ()))

    def get_asset_transfers(self, asset_id: str) -> List[ConfirmationRecord]:
        with self._lock:
            return self._lookup(self._by_asset.get(asset_id, ()))

    def generate_report(self, start: float, end: float) -> Dict[str, Any]:
        """Summary of records whose timestamp falls in [start, end]."""
        records = [r for r in self.all_records() if start <= r.timestamp <= end]

        users: Dict[str, List[str]] = {}
        assets: Dict[str, List[str]] = {}
        volume: Dict[str, int] = {}
        for r in records:
            user = r.metadata.get("from_account", "unknown")
            asset = r.metadata.get("asset", "unknown")
            users.setdefault(user, []).append(r.confirmation_id)
            assets.setdefault(asset, []).append(r.confirmation_id)
            if r.status == ConfirmationStatus.CONFIRMED:
                volume[asset] = volume.get(asset, 0) + int(r.metadata.get("amount", 0) or 0)

        return {
            "report_id": f"report_{uuid.uuid4().hex[:12]}",
            "generated_at": self._clock(),
            "period": {"start": start, "end": end},
            "router_id": self.router_id,
            "user_transactions": users,
            "asset_transactions": assets,
            "confirmations": [r.to_dict() for r in records],
            "summary": {
                "total_transfers": len(records),
                "successful_transfers": sum(
                    1 for r in records if r.status == ConfirmationStatus.CONFIRMED),
                "failed_transfers": sum(
                    1 for r in records if r.status == ConfirmationStatus.FAILED),
                "rolled_back_transfers": sum(
                    1 for r in records if r.status == ConfirmationStatus.ROLLED_BACK),
                "total_volume": volume,
            },
        }

    def cleanup_old_records(self, older_than_days: float) -> int:
        """Drop records last updated before the cutoff. Returns count removed."""
        cutoff = self._clock() - older_than_days * 86400
        with self._lock:
            stale = [key for key, rec in self._records.items() if rec.timestamp < cutoff]
            for key in stale:
                record = self._records.pop(key)
                self._by_id.pop(record.confirmation_id, None)
                for index in (self._by_user, self._by_asset):
                    for ids in index.values():
                        ids.discard(record.confirmation_id)
        log.info(f"Cleaned up {len(stale)} old confirmation records")
        return len(stale)

    # -- persistence ----------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {rec.confirmation_id: rec.to_dict() for rec in self._records.values()}

    def load(self, data: Dict[str, Any]):
        with self._lock:
            for entry in data.values():
                record = ConfirmationRecord.from_dict(entry)
                key = (record.transfer_id, record.router_id)
                self._records[key] = record
                self._by_id[record.confirmation_id] = key
                self._index(record)
        log.info(f"Loaded {len(data)} confirmation records")
