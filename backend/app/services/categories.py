"""Per-category behaviour of indexing jobs.

Each ``DataCategory`` member has exactly one handler that knows which
parameter holds the monitored address, how to turn an event into destination
rows and what the destination table looks like. Adding a category means
adding an enum member and a handler; ``HANDLERS`` is checked for completeness
at import time.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel

from app.models.enums import DataCategory
from app.services.events import Instruction, ParsedEvent, dict_at, parse_event

TOP_LEVEL_INSTRUCTION = -1


def _json_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


class DestinationRow(BaseModel):
    """One row destined for a user table, keyed by ``conflict_columns``."""

    conflict_columns: ClassVar[tuple[str, ...]] = ()

    def to_params(self) -> Dict[str, Any]:
        return self.model_dump()


class MintActivityRow(DestinationRow):
    conflict_columns: ClassVar[tuple[str, ...]] = ("tx_signature",)

    tx_signature: str
    block_time: datetime
    slot: Optional[int]
    monitored_mint_address: str
    tx_type: str
    fee_sol: Optional[float]
    success: bool
    involved_accounts: List[str]
    token_transfers: Optional[str]
    nft_events: Optional[str]
    instructions: Optional[str]
    log_messages: Optional[List[str]]
    raw_payload: str


class ProgramInteractionRow(DestinationRow):
    conflict_columns: ClassVar[tuple[str, ...]] = (
        "tx_signature",
        "instruction_index",
        "inner_instruction_index",
    )

    tx_signature: str
    instruction_index: int
    inner_instruction_index: int
    block_time: datetime
    slot: Optional[int]
    monitored_program_id: str
    instruction_name: str
    accounts: List[str]
    instruction_data: Optional[str]
    fee_sol: Optional[float]
    success: bool
    signers: List[str]
    raw_payload: str


class CategoryHandler(ABC):
    category: ClassVar[DataCategory]
    param_key: ClassVar[str]
    row_model: ClassVar[type[DestinationRow]]

    def monitored_address(self, params: Any) -> Optional[str]:
        if not isinstance(params, Mapping):
            return None
        value = params.get(self.param_key)
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    @abstractmethod
    def transform(self, event: ParsedEvent, params: Any) -> List[DestinationRow]:
        """Rows to write for one event; an empty list means nothing to write."""

    @abstractmethod
    def create_table_sql(self, table: str, schema: Optional[str] = "public") -> str:
        ...

    @staticmethod
    def _qualified(table: str, schema: Optional[str]) -> str:
        return f'"{schema}"."{table}"' if schema else f'"{table}"'


class MintActivityHandler(CategoryHandler):
    category = DataCategory.MINT_ACTIVITY
    param_key = "mintAddress"
    row_model = MintActivityRow

    def transform(self, event: ParsedEvent, params: Any) -> List[DestinationRow]:
        monitored_mint = self.monitored_address(params)
        block_time = event.block_time
        if not event.signature or block_time is None or not monitored_mint:
            logger.warning(
                "Skipping mint activity event with missing signature, timestamp or mint",
                signature=event.signature,
                mint=monitored_mint,
            )
            return []

        if event.account_data:
            involved = [record.account for record in event.account_data if record.account]
        else:
            involved = [key.pubkey for key in event.account_keys if key.pubkey]

        mint_involved = (
            monitored_mint in involved
            or any(transfer.mint == monitored_mint for transfer in event.token_transfers)
            or (event.nft_event is not None and monitored_mint in event.nft_event.mints())
        )
        if not mint_involved:
            logger.info(
                "Monitored mint not present in event structure, dropping",
                signature=event.signature,
                mint=monitored_mint,
            )
            return []

        raw = event.raw
        nft_event = dict_at(raw, "events").get("nft")
        instructions = raw.get("instructions")
        if instructions is None:
            instructions = dict_at(raw, "transaction", "message").get("instructions")

        return [
            self.row_model(
                tx_signature=event.signature,
                block_time=block_time,
                slot=event.slot,
                monitored_mint_address=monitored_mint,
                tx_type=event.type or "UNKNOWN",
                fee_sol=event.fee_sol,
                success=event.succeeded,
                involved_accounts=involved,
                token_transfers=_json_or_none(raw.get("tokenTransfers")),
                nft_events=_json_or_none(nft_event),
                instructions=_json_or_none(instructions),
                log_messages=event.log_messages,
                raw_payload=json.dumps(raw, ensure_ascii=False, default=str),
            )
        ]

    def create_table_sql(self, table: str, schema: Optional[str] = "public") -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self._qualified(table, schema)} (\n"
            "    tx_signature TEXT PRIMARY KEY,\n"
            "    block_time TIMESTAMPTZ NOT NULL,\n"
            "    slot BIGINT,\n"
            "    monitored_mint_address TEXT NOT NULL,\n"
            "    tx_type TEXT,\n"
            "    fee_sol DOUBLE PRECISION,\n"
            "    success BOOLEAN,\n"
            "    involved_accounts TEXT[],\n"
            "    token_transfers JSONB,\n"
            "    nft_events JSONB,\n"
            "    instructions JSONB,\n"
            "    log_messages TEXT[],\n"
            "    raw_payload JSONB\n"
            ");"
        )


class ProgramInteractionsHandler(CategoryHandler):
    category = DataCategory.PROGRAM_INTERACTIONS
    param_key = "programId"
    row_model = ProgramInteractionRow

    def transform(self, event: ParsedEvent, params: Any) -> List[DestinationRow]:
        program_id = self.monitored_address(params)
        block_time = event.block_time
        if not event.signature or block_time is None or not program_id:
            logger.warning(
                "Skipping program interaction event with missing signature, timestamp or program",
                signature=event.signature,
                program_id=program_id,
            )
            return []

        raw_payload = json.dumps(event.raw, ensure_ascii=False, default=str)
        signers = event.signers()
        rows: List[DestinationRow] = []

        def build(instruction: Instruction, index: int, inner_index: int) -> DestinationRow:
            return self.row_model(
                tx_signature=event.signature,
                instruction_index=index,
                inner_instruction_index=inner_index,
                block_time=block_time,
                slot=event.slot,
                monitored_program_id=program_id,
                instruction_name=instruction.name or event.type or "UNKNOWN",
                accounts=instruction.account_list(),
                instruction_data=instruction.data,
                fee_sol=event.fee_sol,
                success=event.succeeded,
                signers=signers,
                raw_payload=raw_payload,
            )

        for index, instruction in enumerate(event.instructions):
            if instruction.program_id == program_id:
                rows.append(build(instruction, index, TOP_LEVEL_INSTRUCTION))
            for inner_index, inner in enumerate(instruction.inner()):
                if inner.program_id == program_id:
                    rows.append(build(inner, index, inner_index))

        if not rows:
            logger.info(
                "Program not invoked by any instruction, dropping",
                signature=event.signature,
                program_id=program_id,
            )
        return rows

    def create_table_sql(self, table: str, schema: Optional[str] = "public") -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self._qualified(table, schema)} (\n"
            "    tx_signature TEXT NOT NULL,\n"
            "    instruction_index INTEGER NOT NULL,\n"
            "    inner_instruction_index INTEGER NOT NULL DEFAULT -1,\n"
            "    block_time TIMESTAMPTZ NOT NULL,\n"
            "    slot BIGINT,\n"
            "    monitored_program_id TEXT NOT NULL,\n"
            "    instruction_name TEXT,\n"
            "    accounts TEXT[],\n"
            "    instruction_data TEXT,\n"
            "    fee_sol DOUBLE PRECISION,\n"
            "    success BOOLEAN,\n"
            "    signers TEXT[],\n"
            "    raw_payload JSONB,\n"
            "    PRIMARY KEY (tx_signature, instruction_index, inner_instruction_index)\n"
            ");"
        )


HANDLERS: Dict[DataCategory, CategoryHandler] = {
    handler.category: handler for handler in (MintActivityHandler(), ProgramInteractionsHandler())
}

_missing = set(DataCategory) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"No handler registered for categories: {sorted(c.value for c in _missing)}")


def get_handler(category: Any) -> Optional[CategoryHandler]:
    try:
        return HANDLERS[DataCategory(category)]
    except ValueError:
        return None


def monitored_address(category: Any, params: Any, *, job_id: Any = None) -> Optional[str]:
    """Address a job watches, or None when the job cannot be matched."""
    handler = get_handler(category)
    if handler is None:
        logger.warning("Job has unsupported data category", job_id=job_id, category=str(category))
        return None
    address = handler.monitored_address(params)
    if address is None:
        logger.warning(
            "Job has missing or invalid address parameter",
            job_id=job_id,
            category=handler.category.value,
            param=handler.param_key,
        )
    return address


def transform_payload(category: Any, payload: Any, params: Any) -> List[DestinationRow]:
    handler = get_handler(category)
    if handler is None:
        raise ValueError(f"Unsupported data_category: {category}")
    event = parse_event(payload)
    if event is None:
        return []
    return handler.transform(event, params)
