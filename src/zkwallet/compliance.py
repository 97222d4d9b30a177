"""Compliance report assembly.

Correlates history records with the decrypted account and note state the
pool client exposes, plus the ciphertext chunk and ECDH key stored at each
tree index. The report is built on demand for a time window and is meant
for an external auditor, so every big integer and byte string serializes
losslessly.

Incoming transfers and direct deposits were not produced by this
identity's spending key: they carry no nullifier or account state. Direct
deposits also carry no encrypted note payload.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from zkwallet.exceptions import IntegrityError
from zkwallet.models import HistoryRecord, HistoryRecordType
from zkwallet.pool.base import DecryptedAccount, DecryptedNote, PoolClient, TxMaterial

logger = logging.getLogger(__name__)

NO_ACCOUNT_TYPES = (HistoryRecordType.TRANSFER_IN, HistoryRecordType.DIRECT_DEPOSIT)


@dataclass
class KeyedChunk:
    """Ciphertext chunk and its ECDH key at one tree index."""

    index: int
    chunk: bytes
    key: bytes


@dataclass
class ComplianceRecord:
    """History record extended with decrypted material."""

    record: HistoryRecord
    nullifier: Optional[int] = None
    next_nullifier: Optional[int] = None
    account: Optional[DecryptedAccount] = None
    account_chunk: Optional[KeyedChunk] = None
    notes: list[DecryptedNote] = field(default_factory=list)
    note_chunks: list[KeyedChunk] = field(default_factory=list)
    input_account: Optional[DecryptedAccount] = None
    input_notes: list[DecryptedNote] = field(default_factory=list)
    integrity_errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.integrity_errors


@dataclass
class ComplianceReport:
    """Exported report with its metadata header."""

    exporter: str
    exported_at: int
    from_ms: Optional[int]
    to_ms: Optional[int]
    records: list[ComplianceRecord] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def flagged(self) -> list[ComplianceRecord]:
        """Records with missing key material."""
        return [record for record in self.records if not record.is_valid]

    def raise_for_integrity(self) -> None:
        """Raise IntegrityError if any record is missing key material."""
        flagged = self.flagged
        if flagged:
            raise IntegrityError(
                f"{len(flagged)} record(s) are missing key material",
                {"tx_hashes": [entry.record.tx_hash for entry in flagged]},
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": {
                "exporter": self.exporter,
                "exported_at": self.exported_at,
                "from_ms": self.from_ms,
                "to_ms": self.to_ms,
                "record_count": self.record_count,
            },
            "records": [_record_to_dict(record) for record in self.records],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def _big(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _account_to_dict(account: Optional[DecryptedAccount]) -> Optional[dict[str, Any]]:
    if account is None:
        return None
    return {
        "index": account.index,
        "balance": _big(account.balance),
        "energy": _big(account.energy),
        "diversifier": _big(account.diversifier),
        "public_key": _big(account.public_key),
        "nonce": _big(account.nonce),
    }


def _note_to_dict(note: DecryptedNote) -> dict[str, Any]:
    return {
        "index": note.index,
        "balance": _big(note.balance),
        "diversifier": _big(note.diversifier),
        "public_key": _big(note.public_key),
        "blinding": _hex(note.blinding),
    }


def _chunk_to_dict(chunk: Optional[KeyedChunk]) -> Optional[dict[str, Any]]:
    if chunk is None:
        return None
    return {"index": chunk.index, "chunk": _hex(chunk.chunk), "key": _hex(chunk.key)}


def _record_to_dict(entry: ComplianceRecord) -> dict[str, Any]:
    record = entry.record
    return {
        "timestamp": record.timestamp,
        "type": record.type.value,
        "state": record.state.value,
        "tx_hash": record.tx_hash,
        "index": record.index,
        "fee": _big(record.fee),
        "actions": [
            {
                "from": action.from_address,
                "to": action.to_address,
                "amount": _big(action.amount),
                "is_loopback": action.is_loopback,
            }
            for action in record.actions
        ],
        "nullifier": _big(entry.nullifier),
        "next_nullifier": _big(entry.next_nullifier),
        "account": _account_to_dict(entry.account),
        "account_chunk": _chunk_to_dict(entry.account_chunk),
        "notes": [_note_to_dict(note) for note in entry.notes],
        "note_chunks": [_chunk_to_dict(chunk) for chunk in entry.note_chunks],
        "input_account": _account_to_dict(entry.input_account),
        "input_notes": [_note_to_dict(note) for note in entry.input_notes],
        "integrity_errors": list(entry.integrity_errors),
    }


class ComplianceReportBuilder:
    """Builds compliance reports from a pool client's history.

    Usage:
        builder = ComplianceReportBuilder(pool, identity.account_id)
        report = await builder.build(from_ms=1700000000000)
        print(report.to_json())
    """

    def __init__(self, pool: PoolClient, exporter: str):
        self.pool = pool
        self.exporter = exporter

    async def build(
        self, from_ms: Optional[int] = None, to_ms: Optional[int] = None
    ) -> ComplianceReport:
        """Assemble the report for an inclusive time window in milliseconds.

        Records with missing key material are flagged, not dropped.
        """
        history = await self.pool.raw_history(True)
        report = ComplianceReport(
            exporter=self.exporter,
            exported_at=int(time.time() * 1000),
            from_ms=from_ms,
            to_ms=to_ms,
        )

        for record in history:
            timestamp_ms = record.timestamp * 1000
            if from_ms is not None and timestamp_ms < from_ms:
                continue
            if to_ms is not None and timestamp_ms > to_ms:
                continue
            report.records.append(await self._build_record(record))

        if report.flagged:
            logger.warning(
                f"Compliance report has {len(report.flagged)} record(s) with missing key material"
            )
        logger.info(f"Compliance report built with {report.record_count} record(s)")
        return report

    async def _build_record(self, record: HistoryRecord) -> ComplianceRecord:
        entry = ComplianceRecord(record=record)
        material = await self.pool.tx_material(record)
        if material is None:
            if record.type == HistoryRecordType.DIRECT_DEPOSIT:
                return entry
            entry.integrity_errors.append(f"No decrypted state for transaction {record.tx_hash}")
            return entry

        if record.type not in NO_ACCOUNT_TYPES:
            entry.nullifier = material.nullifier
            entry.next_nullifier = material.next_nullifier
            entry.account = material.account
            entry.input_account = material.input_account
            entry.input_notes = list(material.input_notes)
            if material.account is not None:
                entry.account_chunk = self._keyed_chunk(entry, material, material.account.index)

        if record.type != HistoryRecordType.DIRECT_DEPOSIT:
            for note in material.notes:
                entry.notes.append(note)
                chunk = self._keyed_chunk(entry, material, note.index)
                if chunk is not None:
                    entry.note_chunks.append(chunk)

        return entry

    @staticmethod
    def _keyed_chunk(
        entry: ComplianceRecord, material: TxMaterial, index: int
    ) -> Optional[KeyedChunk]:
        chunk = material.chunks.get(index)
        key = material.ecdh_keys.get(index)
        if chunk is None or key is None:
            missing = "ciphertext" if chunk is None else "ECDH key"
            entry.integrity_errors.append(f"Missing {missing} at index {index}")
            logger.warning(
                f"Integrity error in {entry.record.type.value} {entry.record.tx_hash}: "
                f"missing {missing} at index {index}"
            )
            return None
        return KeyedChunk(index=index, chunk=chunk, key=key)
