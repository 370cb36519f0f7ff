"""
Mock bridge: route-execution target for local mode.

Executes stub mockBridge payloads in process. Pulls the bridged amount from
the ledger, delivers the destination token to the vault and credits the
receiver through deposit_authorized(), so the vault's holdings always cover
the new obligation before it is recorded.
"""

import logging

from .errors import Unauthorized, ValidationError
from .ledger import RouteExecutionTarget
from .protocol import NULL_ADDRESS, normalize_address
from .routes import decode_stub_route
from .tokens import TokenLedger
from .vault import VaultLedger

logger = logging.getLogger("lazarus.bridge")


class MockBridge(RouteExecutionTarget):
    def __init__(self, address: str, tokens: TokenLedger, vault: VaultLedger, destination_chain_id: int):
        self._address = normalize_address(address)
        self._tokens = tokens
        self._vault = vault
        self._destination_chain_id = destination_chain_id
        self.executed: list[tuple[str, int, str]] = []

    @property
    def address(self) -> str:
        return self._address

    def execute_route(self, sender: str, token: str, amount: int, route_instructions: bytes) -> None:
        payload_token, payload_amount, receiver, chain_id = decode_stub_route(route_instructions)
        if normalize_address(payload_token) != normalize_address(token):
            raise ValidationError(f"payload token {payload_token} != {token}")
        if payload_amount != amount:
            raise ValidationError(f"payload amount {payload_amount} != approved {amount}")
        if chain_id != self._destination_chain_id:
            raise ValidationError(f"unsupported destination chain {chain_id}")
        # Vault credit preconditions, checked before anything is pulled
        if normalize_address(receiver) == NULL_ADDRESS or amount <= 0:
            raise ValidationError(f"cannot credit {amount} to {receiver}")
        if not self._vault.is_relayer(self._address):
            raise Unauthorized(f"bridge {self._address[:10]}... is not a vault relayer")

        self._tokens.transfer_from(token, self._address, sender, self._address, amount)
        try:
            # 1:1 delivery of the destination asset, then credit on arrival
            self._tokens.mint(self._vault.token, self._vault.address, amount)
            self._vault.deposit_authorized(self._address, receiver, amount)
        except Exception:
            self._tokens.transfer(token, self._address, sender, amount)
            raise
        self.executed.append((normalize_address(token), amount, normalize_address(receiver)))
        logger.info(f"BRIDGED {amount} of {token[:10]}... -> vault for {receiver[:10]}... (chain {chain_id})")
