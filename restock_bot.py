import argparse
import asyncio
import base64
import contextlib
import csv
import json
import logging
import os
import signal
import sqlite3
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation, getcontext
from enum import IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set
from urllib.parse import urlencode

import aiohttp
from aiohttp import web
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

getcontext().prec = 60

logger = logging.getLogger("restock_bot")

LAMPORTS_PER_SOL = 10**9
OWNER_OFFSET = 32
OWNER_LENGTH = 32

DEFAULT_TARGET_MINT = "FU9etYuLtzANF59y5oNoByLge3raMEUn7EC56LkuBAGS"
DEFAULT_SOL_MINTS = [
    "So11111111111111111111111111111111111111111",
    "So11111111111111111111111111111111111111112",
]
DEFAULT_TOKEN_PROGRAM_IDS = [
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
    "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",
]
DEFAULT_DEX_SUBSCRIPTIONS = [
    {"name": "Meteora DBC", "program_address": "dbcij3LWUppWqq96dh6gJWwBifmcGfLSB5D4DuSMaqN"},
    {"name": "Post-Migration", "program_address": "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG"},
]

DEX_TRADES_QUERY = """
subscription {
  Solana {
    DEXTrades(
      where: {Trade: {Dex: {ProgramAddress: {is: "%s"}}}}
    ) {
      Trade {
        Dex {
          ProgramAddress
          ProtocolFamily
          ProtocolName
        }
        Buy {
          Currency {
            Name
            Symbol
            MintAddress
          }
          Amount
          Account {
            Address
          }
          PriceAgainstSellCurrency: Price
        }
        Sell {
          Account {
            Address
          }
          Amount
          Currency {
            Name
            Symbol
            MintAddress
          }
          PriceAgainstBuyCurrency: Price
        }
      }
      Block {
        Time
      }
    }
  }
}
"""

CSV_HEADER = ["payer_address", "settlement_amount", "status", "confirmation_ref", "explorer_link"]

SleepFunc = Callable[[float], Awaitable[Any]]
ClockFunc = Callable[[], float]


def to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return d


def decimal_to_str(v: Optional[Decimal]) -> Optional[str]:
    if v is None:
        return None
    return format(v.normalize(), "f")


def sol_to_lamports(amount: Decimal) -> int:
    return int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(int(lamports)) / Decimal(LAMPORTS_PER_SOL)


def parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"", "0", "false", "no", "off"}:
            return False
    raise ValueError(f"{key} must be a boolean, got: {value!r}")


def normalize_address(addr: Any, key: str) -> str:
    if not isinstance(addr, str) or not addr.strip():
        raise ValueError(f"{key} must be a non-empty address string, got: {addr!r}")
    return addr.strip()


def load_treasury_keypair(raw: str) -> Keypair:
    value = raw.strip()
    if not value:
        raise ValueError("TREASURY_PRIVATE_KEY is empty")

    if value.startswith("["):
        try:
            arr = json.loads(value)
            if not isinstance(arr, list):
                raise ValueError("not a list")
            return Keypair.from_bytes(bytes(arr))
        except (TypeError, ValueError) as e:
            raise ValueError(f"TREASURY_PRIVATE_KEY JSON must be a 64-byte integer array: {e}") from e

    try:
        return Keypair.from_base58_string(value)
    except Exception as e:
        raise ValueError(f"TREASURY_PRIVATE_KEY is not a valid base58 keypair: {e}") from e


@dataclass
class DexSubscription:
    name: str
    program_address: str


@dataclass
class AppConfig:
    stream_url: str
    stream_token: str
    rpc_endpoint: str
    treasury_private_key: str
    enable_refunds: bool
    target_mint: str
    sol_mints: Set[str]
    token_program_ids: Set[str]
    dex_subscriptions: List[DexSubscription]
    rate_limit_per_second: int
    max_write_retries: int
    write_retry_backoff_sec: float
    refund_check_interval_sec: float
    reserve_buffer_sol: Decimal
    refund_multiplier: Decimal
    confirm_timeout_sec: float
    max_rpc_retries: int
    reconnect_delay_sec: float
    sqlite_path: str
    ledger_csv_path: Optional[str]
    explorer_tx_url: str
    log_level: str
    api_host: str
    api_port: int


def _address_list(raw: Dict[str, Any], key: str, default: List[str]) -> List[str]:
    value = raw.get(key, default)
    if isinstance(value, str):
        value = [x for x in value.split(",") if x.strip()]
    if not isinstance(value, list) or not value:
        raise ValueError(f"{key} must be a non-empty list")
    return [normalize_address(x, key) for x in value]


def _number(raw: Dict[str, Any], key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number, got: {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be a number, got: {value!r}") from e


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be a JSON object")

    for key in ("STREAM_TOKEN", "RPC_ENDPOINT"):
        if not str(raw.get(key, "")).strip():
            raise ValueError(f"{key} is required")

    dex_subscriptions: List[DexSubscription] = []
    for item in raw.get("DEX_SUBSCRIPTIONS", DEFAULT_DEX_SUBSCRIPTIONS):
        if not isinstance(item, dict):
            raise ValueError("DEX_SUBSCRIPTIONS entries must be objects")
        program_address = normalize_address(item.get("program_address"), "DEX_SUBSCRIPTIONS.program_address")
        dex_subscriptions.append(
            DexSubscription(
                name=str(item.get("name") or program_address),
                program_address=program_address,
            )
        )
    if not dex_subscriptions:
        raise ValueError("DEX_SUBSCRIPTIONS cannot be empty")

    rate_limit_per_second = _number(raw, "RATE_LIMIT_PER_SECOND", 9, int)
    if rate_limit_per_second <= 0:
        raise ValueError("RATE_LIMIT_PER_SECOND must be >= 1")
    max_write_retries = _number(raw, "MAX_WRITE_RETRIES", 3, int)
    if max_write_retries <= 0:
        raise ValueError("MAX_WRITE_RETRIES must be >= 1")
    refund_check_interval_sec = _number(raw, "REFUND_CHECK_INTERVAL_SEC", 300, float)
    if refund_check_interval_sec <= 0:
        raise ValueError("REFUND_CHECK_INTERVAL_SEC must be > 0")

    try:
        reserve_buffer_sol = to_decimal(raw.get("RESERVE_BUFFER_SOL", "2"))
        refund_multiplier = to_decimal(raw.get("REFUND_MULTIPLIER", "2"))
    except ValueError as e:
        raise ValueError(f"invalid refund policy: {e}") from e
    if reserve_buffer_sol < 0:
        raise ValueError("RESERVE_BUFFER_SOL must be >= 0")
    if refund_multiplier < 1:
        raise ValueError("REFUND_MULTIPLIER must be >= 1")

    ledger_csv_path = str(raw.get("LEDGER_CSV_PATH", "./data/trades.csv")).strip() or None

    return AppConfig(
        stream_url=str(raw.get("STREAM_URL", "wss://streaming.bitquery.io/eap")).strip(),
        stream_token=str(raw["STREAM_TOKEN"]).strip(),
        rpc_endpoint=str(raw["RPC_ENDPOINT"]).strip(),
        treasury_private_key=str(raw.get("TREASURY_PRIVATE_KEY", "")),
        enable_refunds=parse_bool(raw.get("ENABLE_REFUNDS", False), "ENABLE_REFUNDS"),
        target_mint=normalize_address(raw.get("TARGET_MINT", DEFAULT_TARGET_MINT), "TARGET_MINT"),
        sol_mints=set(_address_list(raw, "SOL_MINTS", DEFAULT_SOL_MINTS)),
        token_program_ids=set(_address_list(raw, "TOKEN_PROGRAM_IDS", DEFAULT_TOKEN_PROGRAM_IDS)),
        dex_subscriptions=dex_subscriptions,
        rate_limit_per_second=rate_limit_per_second,
        max_write_retries=max_write_retries,
        write_retry_backoff_sec=max(0.0, _number(raw, "WRITE_RETRY_BACKOFF_SEC", 1, float)),
        refund_check_interval_sec=refund_check_interval_sec,
        reserve_buffer_sol=reserve_buffer_sol,
        refund_multiplier=refund_multiplier,
        confirm_timeout_sec=_number(raw, "CONFIRM_TIMEOUT_SEC", 60, float),
        max_rpc_retries=max(1, _number(raw, "MAX_RPC_RETRIES", 5, int)),
        reconnect_delay_sec=max(0.0, _number(raw, "RECONNECT_DELAY_SEC", 5, float)),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/restock_ledger.db")),
        ledger_csv_path=ledger_csv_path,
        explorer_tx_url=str(raw.get("EXPLORER_TX_URL", "https://solscan.io/tx/")),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=_number(raw, "API_PORT", 8080, int),
    )


class RPCClient:
    def __init__(self, url: str, max_retries: int = 5, timeout_sec: int = 12, commitment: str = "confirmed"):
        self.url = url
        self.max_retries = max_retries
        self.commitment = commitment
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any], max_retries: Optional[int] = None) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        attempts = max_retries or self.max_retries
        backoff = 0.5
        for attempt in range(1, attempts + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    data = await resp.json(content_type=None)
                if "error" in data:
                    raise RuntimeError(f"RPC error: {data['error']}")
                return data.get("result")
            except Exception as e:
                if attempt >= attempts:
                    raise
                logger.debug("%s failed (attempt %d/%d): %s", method, attempt, attempts, e)
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}]
        )
        return (result or {}).get("value")

    async def get_balance(self, address: str) -> int:
        result = await self.call("getBalance", [address, {"commitment": self.commitment}])
        return int((result or {}).get("value", 0))

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return str(result["value"]["blockhash"])

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        result = await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            max_retries=1,
        )
        return str(result)

    async def get_signature_statuses(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        result = await self.call("getSignatureStatuses", [signatures])
        return list((result or {}).get("value") or [])


class RateLimiter:
    def __init__(
        self,
        max_per_second: int,
        clock: ClockFunc = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
        window_sec: float = 1.0,
    ):
        if max_per_second <= 0:
            raise ValueError("max_per_second must be >= 1")
        self.max_per_window = max_per_second
        self.window_sec = window_sec
        self._clock = clock
        self._sleep = sleep
        # timestamps of the reservations still inside the window, oldest first
        self._stamps: Deque[float] = deque()

    @property
    def count(self) -> int:
        return len(self._stamps)

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            while self._stamps and now - self._stamps[0] >= self.window_sec:
                self._stamps.popleft()
            if len(self._stamps) < self.max_per_window:
                self._stamps.append(now)
                return
            await self._sleep(self.window_sec - (now - self._stamps[0]))


RESOLVED = "resolved"
NOT_FOUND = "not_found"
NOT_TOKEN_ACCOUNT = "not_token_account"
RESOLVE_ERROR = "error"


@dataclass
class Resolution:
    account: str
    wallet: str
    outcome: str

    @property
    def is_distinct(self) -> bool:
        return self.wallet != self.account


class AddressResolver:
    def __init__(self, rpc: Any, rate_limiter: RateLimiter, token_program_ids: Iterable[str]):
        self.rpc = rpc
        self.rate_limiter = rate_limiter
        self.token_program_ids = set(token_program_ids)

    async def resolve(self, account: str) -> str:
        return (await self.resolve_detailed(account)).wallet

    async def resolve_detailed(self, account: str) -> Resolution:
        await self.rate_limiter.acquire()
        try:
            info = await self.rpc.get_account_info(account)
            if not info:
                logger.warning("no account info for %s: account does not exist", account)
                return Resolution(account, account, NOT_FOUND)

            owner_program = str(info.get("owner", ""))
            if owner_program not in self.token_program_ids:
                logger.warning(
                    "address %s is not an SPL/Token-2022 account (owner: %s)", account, owner_program
                )
                return Resolution(account, account, NOT_TOKEN_ACCOUNT)

            raw = self._account_data(info)
            if len(raw) < OWNER_OFFSET + OWNER_LENGTH:
                raise ValueError(f"token account data too short ({len(raw)} bytes)")
            owner = str(Pubkey.from_bytes(raw[OWNER_OFFSET : OWNER_OFFSET + OWNER_LENGTH]))
            logger.info("resolved token account %s to owner %s", account, owner)
            return Resolution(account, owner, RESOLVED)
        except Exception as e:
            logger.error("error resolving owner for %s: %s: %s", account, type(e).__name__, e)
            return Resolution(account, account, RESOLVE_ERROR)

    @staticmethod
    def _account_data(info: Dict[str, Any]) -> bytes:
        data = info.get("data")
        if isinstance(data, list) and data:
            return base64.b64decode(str(data[0]))
        if isinstance(data, str):
            return base64.b64decode(data)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        raise ValueError(f"unsupported account data encoding: {type(data).__name__}")


class TradeStatus(IntEnum):
    PENDING = 0
    REFUNDED = 1


@dataclass
class TradeRecord:
    payer_address: str
    settlement_amount: Decimal
    status: TradeStatus = TradeStatus.PENDING
    confirmation_ref: Optional[str] = None

    def to_api(self, index: int) -> Dict[str, Any]:
        return {
            "index": index,
            "payerAddress": self.payer_address,
            "settlementAmount": decimal_to_str(self.settlement_amount),
            "status": self.status.name.lower(),
            "confirmationRef": self.confirmation_ref,
        }


UPDATABLE_FIELDS = {"status", "confirmation_ref"}


class LedgerStore:
    def __init__(
        self,
        db_path: str,
        max_write_retries: int = 3,
        retry_backoff_sec: float = 1.0,
        csv_path: Optional[str] = None,
        explorer_tx_url: str = "",
        sleep: SleepFunc = asyncio.sleep,
    ):
        if max_write_retries <= 0:
            raise ValueError("max_write_retries must be >= 1")
        self.db_path = db_path
        self.max_write_retries = max_write_retries
        self.retry_backoff_sec = retry_backoff_sec
        self.csv_path = csv_path
        self.explorer_tx_url = explorer_tx_url
        self._sleep = sleep
        self._lock = asyncio.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=FULL;

            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payer_address TEXT NOT NULL,
                settlement_amount TEXT NOT NULL,
                status INTEGER NOT NULL DEFAULT 0,
                confirmation_ref TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status, id);
            """
        )
        self.conn.commit()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TradeRecord:
        return TradeRecord(
            payer_address=str(row["payer_address"]),
            settlement_amount=Decimal(str(row["settlement_amount"])),
            status=TradeStatus(int(row["status"])),
            confirmation_ref=row["confirmation_ref"],
        )

    def records(self) -> List[TradeRecord]:
        rows = self.conn.execute(
            """
            SELECT payer_address, settlement_amount, status, confirmation_ref
            FROM trades
            ORDER BY id ASC
            """
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        row = self.conn.execute("SELECT COUNT(1) AS c FROM trades").fetchone()
        return int(row["c"]) if row else 0

    def pending_count(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(1) AS c FROM trades WHERE status = ?", (int(TradeStatus.PENDING),)
        ).fetchone()
        return int(row["c"]) if row else 0

    def _insert(self, record: TradeRecord) -> bool:
        now = int(time.time())
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO trades(
                    payer_address, settlement_amount, status, confirmation_ref, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.payer_address,
                    str(record.settlement_amount),
                    int(record.status),
                    record.confirmation_ref,
                    now,
                    now,
                ),
            )
        return True

    def _update_row(self, index: int, fields: Dict[str, Any]) -> bool:
        with self.conn:
            row = self.conn.execute(
                """
                SELECT id, status, confirmation_ref
                FROM trades
                ORDER BY id ASC
                LIMIT 1 OFFSET ?
                """,
                (index,),
            ).fetchone()
            if row is None:
                return False
            status = TradeStatus(fields.get("status", row["status"]))
            confirmation_ref = fields.get("confirmation_ref", row["confirmation_ref"])
            self.conn.execute(
                """
                UPDATE trades
                SET status = ?, confirmation_ref = ?, updated_at = ?
                WHERE id = ?
                """,
                (int(status), confirmation_ref, int(time.time()), int(row["id"])),
            )
        return True

    async def _write(self, label: str, op: Callable[[], bool]) -> bool:
        async with self._lock:
            for attempt in range(1, self.max_write_retries + 1):
                try:
                    ok = op()
                    break
                except (sqlite3.Error, OSError) as e:
                    logger.error(
                        "ledger %s failed (attempt %d/%d): %s",
                        label,
                        attempt,
                        self.max_write_retries,
                        e,
                    )
                    if attempt >= self.max_write_retries:
                        logger.error("ledger %s failed after %d attempts", label, self.max_write_retries)
                        return False
                    await self._sleep(self.retry_backoff_sec)
            if ok:
                self.export_csv()
            return ok

    async def append(self, record: TradeRecord) -> bool:
        ok = await self._write("append", lambda: self._insert(record))
        if ok:
            logger.info(
                "appended trade to ledger: %s, %s SOL",
                record.payer_address,
                decimal_to_str(record.settlement_amount),
            )
        return ok

    async def update_at(self, index: int, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update ledger fields: {sorted(unknown)}")
        if index < 0:
            logger.error("ledger update rejected: negative index %d", index)
            return False
        ok = await self._write(f"update of row {index}", lambda: self._update_row(index, fields))
        if ok:
            logger.info("updated ledger row %d: %s", index, {k: str(v) for k, v in fields.items()})
        else:
            logger.error("ledger row %d was not updated", index)
        return ok

    def explorer_link(self, confirmation_ref: Optional[str]) -> str:
        if not confirmation_ref or not self.explorer_tx_url:
            return ""
        return f"{self.explorer_tx_url}{confirmation_ref}"

    def export_csv(self) -> None:
        if not self.csv_path:
            return
        path = Path(self.csv_path)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                writer = csv.writer(f)
                writer.writerow(CSV_HEADER)
                for r in self.records():
                    writer.writerow(
                        [
                            r.payer_address,
                            decimal_to_str(r.settlement_amount),
                            int(r.status),
                            r.confirmation_ref or "",
                            self.explorer_link(r.confirmation_ref),
                        ]
                    )
            os.replace(tmp, path)
        except (OSError, sqlite3.Error) as e:
            logger.error("failed to export ledger to %s: %s", path, e)


class DedupTracker:
    def __init__(self, addresses: Optional[Iterable[str]] = None):
        self._seen: Set[str] = set(addresses or [])

    @classmethod
    def from_records(cls, records: Iterable[TradeRecord]) -> "DedupTracker":
        return cls(r.payer_address for r in records)

    def __contains__(self, address: object) -> bool:
        return address in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, address: str) -> None:
        self._seen.add(address)

    def discard(self, address: str) -> None:
        self._seen.discard(address)


ACCEPTED = "accepted"
WRONG_MINT = "wrong_mint"
NO_SETTLEMENT = "no_settlement"
DUPLICATE = "duplicate"
MALFORMED = "malformed"
PERSIST_FAILED = "persist_failed"


@dataclass
class TradeEvent:
    buyer_address: str
    buy_mint: str
    sell_mint: str
    sell_amount: Decimal
    block_time: Optional[str] = None


def _required_str(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"missing {what}: {value!r}")
    return value.strip()


def parse_dex_trade(trade: Dict[str, Any]) -> TradeEvent:
    body = trade["Trade"]
    buy = body["Buy"]
    sell = body["Sell"]
    block = trade.get("Block") or {}
    return TradeEvent(
        buyer_address=_required_str(buy["Account"]["Address"], "buyer address"),
        buy_mint=_required_str(buy["Currency"]["MintAddress"], "buy mint"),
        sell_mint=_required_str(sell["Currency"]["MintAddress"], "sell mint"),
        sell_amount=to_decimal(sell["Amount"]),
        block_time=block.get("Time"),
    )


class StreamConsumer:
    def __init__(
        self,
        target_mint: str,
        sol_mints: Iterable[str],
        ledger: LedgerStore,
        dedup: DedupTracker,
    ):
        self.target_mint = target_mint
        self.sol_mints = set(sol_mints)
        self.ledger = ledger
        self.dedup = dedup
        self.counts: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    def settlement_amount(self, event: TradeEvent) -> Decimal:
        if event.sell_mint in self.sol_mints:
            return event.sell_amount
        return Decimal(0)

    async def on_trade_event(self, trade: Dict[str, Any], source: str = "feed") -> str:
        outcome = await self._process(trade, source)
        self.counts[outcome] += 1
        return outcome

    async def _process(self, trade: Dict[str, Any], source: str) -> str:
        try:
            event = parse_dex_trade(trade)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("dropped malformed trade (%s): %s: %s", source, type(e).__name__, e)
            return MALFORMED

        amount = self.settlement_amount(event)
        logger.debug(
            "trade (%s): buyer=%s buy_mint=%s sell_mint=%s sol=%s time=%s",
            source,
            event.buyer_address,
            event.buy_mint,
            event.sell_mint,
            amount,
            event.block_time,
        )

        if event.buy_mint != self.target_mint:
            logger.debug(
                "skipped trade (%s): buy mint %s is not target %s", source, event.buy_mint, self.target_mint
            )
            return WRONG_MINT
        if amount <= 0:
            logger.info(
                "skipped trade (%s): %s paid no SOL (sell mint %s)",
                source,
                event.buyer_address,
                event.sell_mint,
            )
            return NO_SETTLEMENT

        async with self._lock:
            if event.buyer_address in self.dedup:
                logger.info("skipped trade (%s): %s already logged", source, event.buyer_address)
                return DUPLICATE
            self.dedup.add(event.buyer_address)
            record = TradeRecord(payer_address=event.buyer_address, settlement_amount=amount)
            if not await self.ledger.append(record):
                self.dedup.discard(event.buyer_address)
                logger.error(
                    "failed to record trade (%s) for %s, %s SOL; will accept a redelivery",
                    source,
                    event.buyer_address,
                    decimal_to_str(amount),
                )
                return PERSIST_FAILED

        logger.info("logged trade (%s): %s, %s SOL", source, event.buyer_address, decimal_to_str(amount))
        return ACCEPTED


class FeedClient:
    def __init__(
        self,
        stream_url: str,
        stream_token: str,
        subscriptions: List[DexSubscription],
        consumer: StreamConsumer,
        stats: Dict[str, Any],
        reconnect_delay_sec: float = 5.0,
    ):
        self.stream_url = stream_url
        self.stream_token = stream_token
        self.subscriptions = subscriptions
        self.consumer = consumer
        self.stats = stats
        self.reconnect_delay_sec = reconnect_delay_sec
        self.ws_timeout = aiohttp.ClientTimeout(total=None)

    @property
    def url(self) -> str:
        sep = "&" if "?" in self.stream_url else "?"
        return f"{self.stream_url}{sep}{urlencode({'token': self.stream_token})}"

    def source_name(self, subscription_id: Any) -> str:
        try:
            return self.subscriptions[int(subscription_id) - 1].name
        except (TypeError, ValueError, IndexError):
            return f"subscription {subscription_id}"

    def subscription_messages(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "start",
                "id": str(idx),
                "payload": {"query": DEX_TRADES_QUERY % sub.program_address},
            }
            for idx, sub in enumerate(self.subscriptions, start=1)
        ]

    async def handle_message(self, message: Any) -> List[Dict[str, Any]]:
        if not isinstance(message, dict):
            logger.warning("ignored non-object feed message: %r", message)
            return []
        kind = message.get("type")
        self.stats["feed_messages"] += 1

        if kind == "connection_ack":
            logger.info("connection acknowledged by stream server")
            out = self.subscription_messages()
            for sub, msg in zip(self.subscriptions, out):
                logger.info("subscribing to %s trades (id %s)", sub.name, msg["id"])
            return out
        if kind == "ka":
            self.stats["last_keepalive_at"] = int(time.time())
            logger.debug("keep-alive received")
            return []
        if kind == "data":
            await self._handle_data(message)
            return []
        if kind == "error":
            payload = message.get("payload")
            errors = payload.get("errors", payload) if isinstance(payload, dict) else payload
            logger.error("stream error (%s): %s", self.source_name(message.get("id")), errors)
            return []
        if kind == "complete":
            logger.warning("stream server completed %s", self.source_name(message.get("id")))
            return []

        logger.warning("unhandled feed message type: %s", kind)
        return []

    async def _handle_data(self, message: Dict[str, Any]) -> None:
        source = self.source_name(message.get("id"))
        payload = message.get("payload") or {}
        data = payload.get("data") if isinstance(payload, dict) else None
        trades = ((data or {}).get("Solana") or {}).get("DEXTrades") or []
        if not isinstance(trades, list):
            logger.warning("dropped data message from %s: DEXTrades is not a list", source)
            return
        logger.debug("received %d trades from %s", len(trades), source)
        for trade in trades:
            await self.consumer.on_trade_event(trade, source)

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                async with aiohttp.ClientSession(timeout=self.ws_timeout) as session:
                    async with session.ws_connect(self.url, protocols=("graphql-ws",), heartbeat=30) as ws:
                        self.stats["ws_connected"] = True
                        self.stats["ws_connects"] += 1
                        logger.info("connected to trade stream")
                        await ws.send_json({"type": "connection_init"})

                        while not stop_event.is_set():
                            try:
                                msg = await ws.receive(timeout=5)
                            except asyncio.TimeoutError:
                                continue

                            if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                                logger.warning("trade stream closed (%s)", msg.type.name)
                                break
                            if msg.type != aiohttp.WSMsgType.TEXT:
                                continue
                            try:
                                data = msg.json(loads=json.loads)
                            except ValueError as e:
                                logger.warning("dropped undecodable feed message: %s", e)
                                continue
                            for reply in await self.handle_message(data):
                                await ws.send_json(reply)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("trade stream error: %s: %s", type(e).__name__, e)
            self.stats["ws_connected"] = False
            if stop_event.is_set():
                break
            await asyncio.sleep(self.reconnect_delay_sec)


class Treasury:
    def __init__(
        self,
        keypair: Keypair,
        rpc: RPCClient,
        confirm_timeout_sec: float = 60.0,
        poll_interval_sec: float = 2.0,
        clock: ClockFunc = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.keypair = keypair
        self.rpc = rpc
        self.confirm_timeout_sec = confirm_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._clock = clock
        self._sleep = sleep

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    async def get_balance(self) -> Decimal:
        return lamports_to_sol(await self.rpc.get_balance(self.address))

    def build_transfer(self, to_address: str, lamports: int, blockhash: str) -> Transaction:
        ix = transfer(
            TransferParams(
                from_pubkey=self.keypair.pubkey(),
                to_pubkey=Pubkey.from_string(to_address),
                lamports=lamports,
            )
        )
        recent = Hash.from_string(blockhash)
        message = Message.new_with_blockhash([ix], self.keypair.pubkey(), recent)
        return Transaction([self.keypair], message, recent)

    async def transfer(self, to_address: str, lamports: int) -> str:
        if lamports <= 0:
            raise ValueError(f"refusing to transfer {lamports} lamports")
        blockhash = await self.rpc.get_latest_blockhash()
        tx = self.build_transfer(to_address, lamports, blockhash)
        signature = await self.rpc.send_transaction(bytes(tx))
        await self.wait_for_confirmation(signature)
        return signature

    async def wait_for_confirmation(self, signature: str) -> None:
        deadline = self._clock() + self.confirm_timeout_sec
        while True:
            statuses = await self.rpc.get_signature_statuses([signature])
            status = statuses[0] if statuses else None
            if status:
                if status.get("err") is not None:
                    raise RuntimeError(f"transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in {"confirmed", "finalized"}:
                    return
            if self._clock() >= deadline:
                raise TimeoutError(f"transaction {signature} not confirmed within {self.confirm_timeout_sec}s")
            await self._sleep(self.poll_interval_sec)


@dataclass
class RefundPolicy:
    reserve_buffer: Decimal = Decimal(2)
    multiplier: Decimal = Decimal(2)

    def required_balance(self, amount: Decimal) -> Decimal:
        return self.reserve_buffer + self.multiplier * amount


CYCLE_DISABLED = "disabled"
CYCLE_BALANCE_ERROR = "balance_error"
CYCLE_NO_PENDING = "no_pending"
CYCLE_INSUFFICIENT_FUNDS = "insufficient_funds"
CYCLE_UNRESOLVED = "unresolved"
CYCLE_TRANSFER_FAILED = "transfer_failed"
CYCLE_LEDGER_UPDATE_FAILED = "ledger_update_failed"
CYCLE_REFUNDED = "refunded"


@dataclass
class CycleResult:
    outcome: str
    index: Optional[int] = None
    payer_address: Optional[str] = None
    amount: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    confirmation_ref: Optional[str] = None
    detail: Optional[str] = None
    finished_at: int = field(default_factory=lambda: int(time.time()))

    def to_api(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "index": self.index,
            "payerAddress": self.payer_address,
            "amount": decimal_to_str(self.amount),
            "balance": decimal_to_str(self.balance),
            "confirmationRef": self.confirmation_ref,
            "detail": self.detail,
            "finishedAt": self.finished_at,
        }


class RefundEngine:
    def __init__(
        self,
        ledger: LedgerStore,
        resolver: AddressResolver,
        treasury: Optional[Any],
        policy: RefundPolicy,
        enabled: bool,
        interval_sec: float = 300.0,
    ):
        if enabled and treasury is None:
            raise ValueError("refunds are enabled but no treasury signer is configured")
        self.ledger = ledger
        self.resolver = resolver
        self.treasury = treasury
        self.policy = policy
        self.enabled = enabled
        self.interval_sec = interval_sec
        self.last_result: Optional[CycleResult] = None
        self.cycles = 0
        self.refunds_sent = 0
        self._cycle_lock = asyncio.Lock()

    async def run_cycle(self) -> CycleResult:
        async with self._cycle_lock:
            result = await self._cycle()
        self.cycles += 1
        self.last_result = result
        return result

    async def _cycle(self) -> CycleResult:
        if not self.enabled:
            logger.info("refund processing disabled")
            return CycleResult(CYCLE_DISABLED)

        logger.info("checking for pending refunds")
        try:
            balance = await self.treasury.get_balance()
        except Exception as e:
            logger.error("could not read treasury balance: %s: %s", type(e).__name__, e)
            return CycleResult(CYCLE_BALANCE_ERROR, detail=str(e))
        logger.info("treasury balance: %s SOL", decimal_to_str(balance))

        for index, record in enumerate(self.ledger.records()):
            if record.status != TradeStatus.PENDING:
                continue
            return await self._settle(index, record, balance)

        logger.info("no pending refunds to process")
        return CycleResult(CYCLE_NO_PENDING, balance=balance)

    async def _settle(self, index: int, record: TradeRecord, balance: Decimal) -> CycleResult:
        amount = record.settlement_amount
        address = record.payer_address
        result = CycleResult(
            CYCLE_INSUFFICIENT_FUNDS, index=index, payer_address=address, amount=amount, balance=balance
        )

        required = self.policy.required_balance(amount)
        if balance < required:
            logger.info(
                "insufficient treasury balance (%s SOL) for refund of %s SOL to %s at row %d (requires %s SOL)",
                decimal_to_str(balance),
                decimal_to_str(amount),
                address,
                index,
                decimal_to_str(required),
            )
            result.detail = f"requires {decimal_to_str(required)} SOL"
            return result

        resolution = await self.resolver.resolve_detailed(address)
        if not resolution.is_distinct:
            logger.warning(
                "could not resolve owner for %s (%s), skipping refund of %s SOL at row %d",
                address,
                resolution.outcome,
                decimal_to_str(amount),
                index,
            )
            result.outcome = CYCLE_UNRESOLVED
            result.detail = resolution.outcome
            return result

        wallet = resolution.wallet
        try:
            signature = await self.treasury.transfer(wallet, sol_to_lamports(amount))
        except Exception as e:
            logger.error(
                "error sending refund of %s SOL to %s for %s at row %d: %s: %s",
                decimal_to_str(amount),
                wallet,
                address,
                index,
                type(e).__name__,
                e,
            )
            result.outcome = CYCLE_TRANSFER_FAILED
            result.detail = str(e)
            return result

        self.refunds_sent += 1
        result.confirmation_ref = signature
        logger.info(
            "refunded %s SOL to %s for %s at row %d (tx: %s)",
            decimal_to_str(amount),
            wallet,
            address,
            index,
            signature,
        )

        updated = await self.ledger.update_at(
            index, {"status": TradeStatus.REFUNDED, "confirmation_ref": signature}
        )
        if not updated:
            logger.critical(
                "refund of %s SOL to %s was sent (tx: %s) but ledger row %d for %s could not be marked refunded; "
                "reconcile manually before the next cycle",
                decimal_to_str(amount),
                wallet,
                signature,
                index,
                address,
            )
            result.outcome = CYCLE_LEDGER_UPDATE_FAILED
            return result

        result.outcome = CYCLE_REFUNDED
        return result

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("refund cycle crashed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_sec)


def build_treasury_signer(cfg: AppConfig) -> Optional[Keypair]:
    try:
        return load_treasury_keypair(cfg.treasury_private_key)
    except ValueError as e:
        if cfg.enable_refunds:
            raise ValueError(f"treasury private key invalid, required for refunds: {e}") from e
        logger.warning("treasury wallet not initialized (refunds disabled): %s", e)
        return None


class RestockBot:
    def __init__(self, cfg: AppConfig, role: str = "all"):
        if role not in {"all", "ingest", "refund"}:
            raise ValueError(f"invalid role: {role}")
        self.cfg = cfg
        self.role = role
        self.is_ingest_role = role in {"all", "ingest"}
        self.is_refund_role = role in {"all", "refund"}
        self.enable_api = role == "all"

        keypair = build_treasury_signer(cfg)

        self.ledger = LedgerStore(
            cfg.sqlite_path,
            max_write_retries=cfg.max_write_retries,
            retry_backoff_sec=cfg.write_retry_backoff_sec,
            csv_path=cfg.ledger_csv_path,
            explorer_tx_url=cfg.explorer_tx_url,
        )
        self.ledger.export_csv()
        self.dedup = DedupTracker.from_records(self.ledger.records())
        if len(self.dedup):
            logger.info("rebuilt dedup set from ledger: %d wallets", len(self.dedup))

        self.http_rpc = RPCClient(cfg.rpc_endpoint, max_retries=cfg.max_rpc_retries)
        self.rate_limiter = RateLimiter(cfg.rate_limit_per_second)
        self.resolver = AddressResolver(self.http_rpc, self.rate_limiter, cfg.token_program_ids)
        self.treasury: Optional[Treasury] = None
        if keypair is not None:
            self.treasury = Treasury(keypair, self.http_rpc, confirm_timeout_sec=cfg.confirm_timeout_sec)

        self.stats: Dict[str, Any] = defaultdict(int)
        self.stats.update({"ws_connected": False, "started_at": int(time.time()), "role": role})

        self.consumer = StreamConsumer(cfg.target_mint, cfg.sol_mints, self.ledger, self.dedup)
        self.feed = FeedClient(
            cfg.stream_url,
            cfg.stream_token,
            cfg.dex_subscriptions,
            self.consumer,
            self.stats,
            reconnect_delay_sec=cfg.reconnect_delay_sec,
        )
        self.refund_engine = RefundEngine(
            self.ledger,
            self.resolver,
            self.treasury,
            RefundPolicy(cfg.reserve_buffer_sol, cfg.refund_multiplier),
            enabled=cfg.enable_refunds and self.is_refund_role,
            interval_sec=cfg.refund_check_interval_sec,
        )
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    async def __aenter__(self) -> "RestockBot":
        await self.http_rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        await self.http_rpc.__aexit__(exc_type, exc, tb)
        self.ledger.close()

    def build_health_payload(self) -> Dict[str, Any]:
        last = self.refund_engine.last_result
        return {
            "ok": True,
            "role": self.role,
            "stats": dict(self.stats),
            "trades": dict(self.consumer.counts),
            "ledger": {
                "records": self.ledger.count(),
                "pending": self.ledger.pending_count(),
                "trackedWallets": len(self.dedup),
            },
            "refunds": {
                "enabled": self.refund_engine.enabled,
                "treasury": self.treasury.address if self.treasury else None,
                "cycles": self.refund_engine.cycles,
                "sent": self.refund_engine.refunds_sent,
                "lastCycle": last.to_api() if last else None,
            },
        }

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.build_health_payload())

    async def ledger_handler(self, request: web.Request) -> web.Response:
        status = request.query.get("status", "").strip().lower()
        items = [r.to_api(i) for i, r in enumerate(self.ledger.records())]
        if status:
            if status not in {"pending", "refunded"}:
                return web.json_response({"error": "status must be pending or refunded"}, status=400)
            items = [x for x in items if x["status"] == status]
        return web.json_response({"items": items, "count": len(items)})

    async def create_api_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/ledger", self.ledger_handler)
        return app

    async def run(self) -> None:
        if self.is_ingest_role:
            self.tasks.append(asyncio.create_task(self.feed.run(self.stop_event)))
        if self.is_refund_role:
            if self.refund_engine.enabled:
                self.tasks.append(asyncio.create_task(self.refund_engine.run_forever(self.stop_event)))
            else:
                logger.info("refund processing disabled on startup")

        runner: Optional[web.AppRunner] = None
        if self.enable_api:
            app = await self.create_api_app()
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info("status API listening on %s:%d", self.cfg.api_host, self.cfg.api_port)

        while not self.stop_event.is_set():
            await asyncio.sleep(1)

        if runner is not None:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def main_async(config_path: str, role: str) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.log_level)
    async with RestockBot(cfg, role=role) as bot:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(bot.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await bot.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Restock refund bot: records SOL buys of the target token and refunds them from the treasury"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--role",
        default="all",
        choices=["all", "ingest", "refund"],
        help="run role: all | ingest | refund",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config, args.role))
    except KeyboardInterrupt:
        pass
    except InvalidOperation as e:
        raise SystemExit(f"Decimal calculation error: {e}") from e


if __name__ == "__main__":
    main()
