from __future__ import annotations

import asyncio
import base64
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from restock_bot import LedgerStore

TARGET_MINT = "FU9etYuLtzANF59y5oNoByLge3raMEUn7EC56LkuBAGS"
SOL_MINT = "So11111111111111111111111111111111111111112"
OTHER_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SYSTEM_PROGRAM = "11111111111111111111111111111111"


def new_address() -> str:
    return str(Keypair().pubkey())


def make_trade(
    buyer: str,
    amount: Any = "1.5",
    buy_mint: str = TARGET_MINT,
    sell_mint: str = SOL_MINT,
) -> Dict[str, Any]:
    return {
        "Trade": {
            "Dex": {"ProgramAddress": "dbcij3LWUppWqq96dh6gJWwBifmcGfLSB5D4DuSMaqN"},
            "Buy": {
                "Currency": {"MintAddress": buy_mint, "Symbol": "RSTK"},
                "Amount": "1000",
                "Account": {"Address": buyer},
            },
            "Sell": {
                "Currency": {"MintAddress": sell_mint, "Symbol": "SOL"},
                "Amount": amount,
                "Account": {"Address": new_address()},
            },
        },
        "Block": {"Time": "2025-06-01T12:00:00Z"},
    }


def token_account_info(owner_wallet: str, program: str = TOKEN_PROGRAM) -> Dict[str, Any]:
    raw = bytes(32) + bytes(Pubkey.from_string(owner_wallet)) + bytes(101)
    return {
        "owner": program,
        "lamports": 2039280,
        "data": [base64.b64encode(raw).decode("ascii"), "base64"],
    }


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeRPC:
    def __init__(self, accounts: Optional[Dict[str, Any]] = None, fail: bool = False):
        self.accounts = accounts or {}
        self.fail = fail
        self.calls: List[str] = []

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        self.calls.append(address)
        if self.fail:
            raise ConnectionError("rpc unreachable")
        return self.accounts.get(address)


class FakeTreasury:
    def __init__(self, balance: Any = "10", fail: Optional[Exception] = None):
        self.balance = Decimal(str(balance))
        self.fail = fail
        self.transfers: List[tuple] = []
        self.address = new_address()

    async def get_balance(self) -> Decimal:
        return self.balance

    async def transfer(self, to_address: str, lamports: int) -> str:
        if self.fail is not None:
            raise self.fail
        self.transfers.append((to_address, lamports))
        self.balance -= Decimal(lamports) / Decimal(10**9)
        return f"sig{len(self.transfers)}"


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def ledger(tmp_path: Path):
    store = LedgerStore(
        str(tmp_path / "ledger.db"),
        csv_path=str(tmp_path / "trades.csv"),
        explorer_tx_url="https://solscan.io/tx/",
        sleep=no_sleep,
    )
    yield store
    store.close()
