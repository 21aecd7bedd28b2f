"""Typed view over Helius "enhanced" webhook events.

Incoming events are loosely shaped documents. Each known sub-structure is
parsed into its own model and every model knows which on-chain accounts it
mentions. Anything missing or malformed is dropped silently: a broken
sub-structure never prevents the rest of the event from being read.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

PROGRAM_RULE_SOURCE = "PROGRAM_RULE"
LAMPORTS_PER_SOL = 1_000_000_000

ModelT = TypeVar("ModelT", bound=BaseModel)


class _EventPart(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def accounts(self) -> set[str]:
        return set()


def _present(*values: Optional[str]) -> set[str]:
    return {value for value in values if isinstance(value, str) and value}


class TokenTransfer(_EventPart):
    from_user_account: Optional[str] = Field(default=None, alias="fromUserAccount")
    to_user_account: Optional[str] = Field(default=None, alias="toUserAccount")
    mint: Optional[str] = None

    def accounts(self) -> set[str]:
        return _present(self.from_user_account, self.to_user_account, self.mint)


class NativeTransfer(_EventPart):
    from_user_account: Optional[str] = Field(default=None, alias="fromUserAccount")
    to_user_account: Optional[str] = Field(default=None, alias="toUserAccount")

    def accounts(self) -> set[str]:
        return _present(self.from_user_account, self.to_user_account)


class NftToken(_EventPart):
    mint: Optional[str] = None


class NftEvent(_EventPart):
    buyer: Optional[str] = None
    seller: Optional[str] = None
    nfts: Optional[List[Any]] = None

    def mints(self) -> set[str]:
        return {token.mint for token in _parse_many(NftToken, self.nfts) if token.mint}

    def accounts(self) -> set[str]:
        return _present(self.buyer, self.seller) | self.mints()


class AccountKey(_EventPart):
    pubkey: Optional[str] = None
    signer: bool = False

    def accounts(self) -> set[str]:
        return _present(self.pubkey)


class AccountDataRecord(_EventPart):
    account: Optional[str] = None

    def accounts(self) -> set[str]:
        return _present(self.account)


class RuleAccount(_EventPart):
    """Single-account events emitted by rule-based sources."""

    account: Optional[str] = None

    def accounts(self) -> set[str]:
        return _present(self.account)


class Instruction(_EventPart):
    program_id: Optional[str] = Field(default=None, alias="programId")
    accounts_list: Optional[List[Any]] = Field(default=None, alias="accounts")
    data: Optional[str] = None
    name: Optional[str] = None
    inner_instructions: Optional[List[Any]] = Field(default=None, alias="innerInstructions")

    def account_list(self) -> List[str]:
        return [account for account in self.accounts_list or [] if isinstance(account, str)]

    def inner(self) -> List["Instruction"]:
        return _parse_many(Instruction, self.inner_instructions)


def _parse_one(model: Type[ModelT], raw: Any) -> Optional[ModelT]:
    if not isinstance(raw, dict):
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Skipping malformed {} entry", model.__name__, errors=exc.error_count())
        return None


def _parse_many(model: Type[ModelT], raw: Any) -> List[ModelT]:
    if not isinstance(raw, list):
        return []
    parsed = (_parse_one(model, entry) for entry in raw)
    return [entry for entry in parsed if entry is not None]


def _parse_account_keys(raw: Any) -> List[AccountKey]:
    if not isinstance(raw, list):
        return []
    keys: List[AccountKey] = []
    for entry in raw:
        if isinstance(entry, str):
            if entry:
                keys.append(AccountKey(pubkey=entry))
            continue
        key = _parse_one(AccountKey, entry)
        if key is not None and key.pubkey:
            keys.append(key)
    return keys


def dict_at(source: Any, *path: str) -> Dict[str, Any]:
    current = source
    for key in path:
        if not isinstance(current, dict):
            return {}
        current = current.get(key)
    return current if isinstance(current, dict) else {}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


class ParsedEvent(BaseModel):
    signature: Optional[str] = None
    timestamp: Optional[float] = None
    slot: Optional[int] = None
    fee_lamports: Optional[float] = None
    type: Optional[str] = None
    source: Optional[str] = None
    fee_payer: Optional[str] = None
    transaction_error: Any = None
    meta_error: Any = None

    token_transfers: List[TokenTransfer] = Field(default_factory=list)
    native_transfers: List[NativeTransfer] = Field(default_factory=list)
    nft_event: Optional[NftEvent] = None
    account_keys: List[AccountKey] = Field(default_factory=list)
    account_data: List[AccountDataRecord] = Field(default_factory=list)
    rule_account: Optional[RuleAccount] = None
    instructions: List[Instruction] = Field(default_factory=list)
    log_messages: Optional[List[str]] = None

    raw: Dict[str, Any] = Field(default_factory=dict)

    def parts(self) -> List[_EventPart]:
        parts: List[_EventPart] = [
            *self.token_transfers,
            *self.native_transfers,
            *self.account_keys,
            *self.account_data,
        ]
        if self.nft_event is not None:
            parts.append(self.nft_event)
        if self.rule_account is not None:
            parts.append(self.rule_account)
        return parts

    def involved_accounts(self) -> set[str]:
        accounts: set[str] = set()
        for part in self.parts():
            accounts |= part.accounts()
        return accounts

    @property
    def block_time(self) -> Optional[datetime]:
        if self.timestamp is None:
            return None
        try:
            return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    @property
    def fee_sol(self) -> Optional[float]:
        if self.fee_lamports is None:
            return None
        return self.fee_lamports / LAMPORTS_PER_SOL

    @property
    def succeeded(self) -> bool:
        return self.transaction_error is None and self.meta_error is None

    def signers(self) -> List[str]:
        signers = [key.pubkey for key in self.account_keys if key.signer and key.pubkey]
        if not signers and self.fee_payer:
            signers = [self.fee_payer]
        return signers


def parse_event(payload: Any) -> Optional[ParsedEvent]:
    if not isinstance(payload, dict):
        return None

    message = dict_at(payload, "transaction", "message")
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else None

    instructions = _parse_many(Instruction, payload.get("instructions"))
    if not instructions:
        instructions = _parse_many(Instruction, message.get("instructions"))

    log_messages = meta.get("logMessages") if meta else None
    if not isinstance(log_messages, list):
        log_messages = None
    else:
        log_messages = [line for line in log_messages if isinstance(line, str)]

    rule_account = None
    if payload.get("source") == PROGRAM_RULE_SOURCE:
        rule_account = _parse_one(RuleAccount, payload)

    signature = payload.get("signature")
    slot = payload.get("slot")
    event_type = payload.get("type")
    source = payload.get("source")
    fee_payer = payload.get("feePayer")

    return ParsedEvent(
        signature=signature if isinstance(signature, str) and signature else None,
        timestamp=_number(payload.get("timestamp")),
        slot=slot if isinstance(slot, int) and not isinstance(slot, bool) else None,
        fee_lamports=_number(payload.get("fee")),
        type=event_type if isinstance(event_type, str) else None,
        source=source if isinstance(source, str) else None,
        fee_payer=fee_payer if isinstance(fee_payer, str) else None,
        transaction_error=payload.get("transactionError"),
        meta_error=meta.get("err") if meta else None,
        token_transfers=_parse_many(TokenTransfer, payload.get("tokenTransfers")),
        native_transfers=_parse_many(NativeTransfer, payload.get("nativeTransfers")),
        nft_event=_parse_one(NftEvent, dict_at(payload, "events").get("nft")),
        account_keys=_parse_account_keys(message.get("accountKeys")),
        account_data=_parse_many(AccountDataRecord, payload.get("accountData")),
        rule_account=rule_account,
        instructions=instructions,
        log_messages=log_messages,
        raw=payload,
    )


def involved_accounts(payload: Any) -> set[str]:
    event = parse_event(payload)
    if event is None:
        return set()
    return event.involved_accounts()
