"""
In-process ERC-20 model.

Balances and allowances for any number of tokens, keyed by lowercased
addresses. Used by the in-process StateLedger / VaultLedger so that the
whole settlement path can run without a chain.
"""

import threading
from collections import defaultdict

from .errors import InsufficientFunds
from .protocol import normalize_address, require


class TokenLedger:
    def __init__(self):
        self._balances: dict[str, dict[str, int]] = defaultdict(dict)
        self._allowances: dict[str, dict[tuple[str, str], int]] = defaultdict(dict)
        self._lock = threading.RLock()

    # ---- views ----

    def balance_of(self, token: str, holder: str) -> int:
        token, holder = normalize_address(token), normalize_address(holder)
        with self._lock:
            return self._balances[token].get(holder, 0)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        token = normalize_address(token)
        key = (normalize_address(owner), normalize_address(spender))
        with self._lock:
            return self._allowances[token].get(key, 0)

    # ---- mutations ----

    def mint(self, token: str, to: str, amount: int):
        require(amount >= 0, "negative mint")
        token, to = normalize_address(token), normalize_address(to)
        with self._lock:
            self._balances[token][to] = self._balances[token].get(to, 0) + amount

    def approve(self, token: str, owner: str, spender: str, amount: int):
        require(amount >= 0, "negative allowance")
        token = normalize_address(token)
        with self._lock:
            self._allowances[token][(normalize_address(owner), normalize_address(spender))] = amount

    def transfer(self, token: str, sender: str, to: str, amount: int):
        token, sender, to = normalize_address(token), normalize_address(sender), normalize_address(to)
        with self._lock:
            self._move(token, sender, to, amount)

    def transfer_from(self, token: str, spender: str, owner: str, to: str, amount: int):
        token = normalize_address(token)
        spender, owner, to = normalize_address(spender), normalize_address(owner), normalize_address(to)
        with self._lock:
            allowed = self._allowances[token].get((owner, spender), 0)
            require(allowed >= amount, "ERC20: insufficient allowance", InsufficientFunds)
            self._move(token, owner, to, amount)
            self._allowances[token][(owner, spender)] = allowed - amount

    def _move(self, token: str, sender: str, to: str, amount: int):
        require(amount >= 0, "negative transfer")
        held = self._balances[token].get(sender, 0)
        require(held >= amount, "ERC20: transfer amount exceeds balance", InsufficientFunds)
        self._balances[token][sender] = held - amount
        self._balances[token][to] = self._balances[token].get(to, 0) + amount
