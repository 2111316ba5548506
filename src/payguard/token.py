"""Minimal fungible token used as the payment asset."""

from __future__ import annotations

from dataclasses import dataclass, field

from .chain import Chain, Contract, external
from .errors import InsufficientAllowance, InsufficientBalance, InvalidAddress, InvalidAmount
from .money import DEFAULT_DECIMALS
from .typed_data import ZERO_ADDRESS, is_zero_address, normalize_address


@dataclass
class TokenStorage:
    name: str
    symbol: str
    decimals: int
    total_supply: int = 0
    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[tuple[str, str], int] = field(default_factory=dict)


class Token(Contract):
    """ERC-20 style token with an open ``mint`` for test networks."""

    def __init__(
        self,
        chain: Chain,
        address: str,
        deployer: str,
        name: str = "Test Bitcoin Token",
        symbol: str = "tBTC",
        decimals: int = DEFAULT_DECIMALS,
        initial_supply: int = 0,
    ):
        super().__init__(chain, address, deployer)
        self.storage = TokenStorage(name=name, symbol=symbol, decimals=decimals)
        if initial_supply:
            self._mint(deployer, initial_supply)

    @property
    def name(self) -> str:
        return self.storage.name

    @property
    def symbol(self) -> str:
        return self.storage.symbol

    @property
    def decimals(self) -> int:
        return self.storage.decimals

    @property
    def total_supply(self) -> int:
        return self.storage.total_supply

    def balance_of(self, account: str) -> int:
        return self.storage.balances.get(normalize_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.storage.allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    def _mint(self, to: str, amount: int) -> None:
        to = normalize_address(to)
        self.storage.balances[to] = self.storage.balances.get(to, 0) + amount
        self.storage.total_supply += amount
        self.emit("Transfer", **{"from": ZERO_ADDRESS, "to": to, "value": amount})

    def _move(self, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmount("Transfer amount must be >= 0")
        if is_zero_address(dst):
            raise InvalidAddress("Transfer to the zero address")
        src, dst = normalize_address(src), normalize_address(dst)
        balance = self.storage.balances.get(src, 0)
        if balance < amount:
            raise InsufficientBalance(requested=amount, available=balance)
        self.storage.balances[src] = balance - amount
        self.storage.balances[dst] = self.storage.balances.get(dst, 0) + amount
        self.emit("Transfer", **{"from": src, "to": dst, "value": amount})

    @external
    def mint(self, sender: str, to: str, amount: int) -> bool:
        if amount <= 0:
            raise InvalidAmount("Mint amount must be > 0")
        if is_zero_address(to):
            raise InvalidAddress("Mint to the zero address")
        self._mint(to, int(amount))
        return True

    @external
    def transfer(self, sender: str, to: str, amount: int) -> bool:
        self._move(sender, to, int(amount))
        return True

    @external
    def approve(self, sender: str, spender: str, amount: int) -> bool:
        if is_zero_address(spender):
            raise InvalidAddress("Approve to the zero address")
        if amount < 0:
            raise InvalidAmount("Allowance must be >= 0")
        owner, spender = normalize_address(sender), normalize_address(spender)
        self.storage.allowances[(owner, spender)] = int(amount)
        self.emit("Approval", owner=owner, spender=spender, value=int(amount))
        return True

    @external
    def transfer_from(self, sender: str, owner: str, to: str, amount: int) -> bool:
        key = (normalize_address(owner), normalize_address(sender))
        allowed = self.storage.allowances.get(key, 0)
        if allowed < amount:
            raise InsufficientAllowance(requested=amount, available=allowed)
        self.storage.allowances[key] = allowed - int(amount)
        self._move(owner, to, int(amount))
        return True
