"""
Local deployment: the whole source + destination system in one process.

    TokenLedger  <- shared ERC-20 balances for both "chains"
    StateLedger  <- source ledger, route target = MockBridge
    MockBridge   <- executes stub routes, credits the vault
    VaultLedger  <- destination vault, MockBridge is its relayer

The watchtower signer is owner, executor and relay of the ledger, the same
roles the deploy script grants it on chain.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable

from .bridge import MockBridge
from .ledger import StateLedger
from .local_chain import LocalLedgerClient
from .tokens import TokenLedger
from .vault import VaultLedger

logger = logging.getLogger("lazarus.deployment")


def derive_address(label: str) -> str:
    """Deterministic placeholder address for an in-process contract."""
    return "0x" + hashlib.sha256(label.encode()).hexdigest()[:40]


@dataclass
class LocalDeployment:
    tokens: TokenLedger
    ledger: StateLedger
    bridge: MockBridge
    vault: VaultLedger
    client: LocalLedgerClient
    signer: str


def deploy_local(
    signer: str,
    destination_token: str,
    destination_chain_id: int,
    clock: Callable[[], float] = time.time,
) -> LocalDeployment:
    tokens = TokenLedger()
    vault_address = derive_address("lazarus.vault")
    bridge_address = derive_address("lazarus.bridge")

    vault = VaultLedger(
        address=vault_address,
        tokens=tokens,
        token=destination_token,
        owner=signer,
        relayers=(bridge_address,),
        clock=clock,
    )
    bridge = MockBridge(bridge_address, tokens, vault, destination_chain_id)
    ledger = StateLedger(
        address=derive_address("lazarus.source"),
        tokens=tokens,
        route_target=bridge,
        owner=signer,
        executor=signer,
        relay=signer,
        clock=clock,
    )
    client = LocalLedgerClient(ledger, tokens, signer)
    logger.info(
        f"Local deployment: ledger={ledger.address[:10]}... bridge={bridge.address[:10]}... "
        f"vault={vault.address[:10]}... signer={signer[:10]}..."
    )
    return LocalDeployment(tokens=tokens, ledger=ledger, bridge=bridge, vault=vault, client=client, signer=signer)
