"""
Heartbeat Relay

Accepts signed liveness proofs from users and mirrors them into the
heartbeat cache. Each request touches only its own user's row, so requests
for different users are fully independent.

On a verified heartbeat:
1. Read the user's ledger record (period on first sight, lastHeartbeat for sync)
2. If the ledger's lastHeartbeat is older than the sync threshold, send
   pingFor(user) in the background so the authoritative deadline moves too
3. Upsert the cache row: last_seen = now, signature, carried inactivity period

Ledger-side failures in steps 1-2 are logged and never fail the heartbeat.
"""

import asyncio
import logging
import re
import time
from typing import Callable, Optional, Union

from .chain import LedgerClient
from .errors import AuthenticationError, ValidationError
from .heartbeat_store import HeartbeatRecord, HeartbeatStore
from .ledger import LedgerEvent, UserInfo
from .protocol import PROTOCOL_RULES, normalize_address
from .signature import DEFAULT_HEARTBEAT_TEXT, HeartbeatMessage, NonceRegistry, verify_heartbeat_signature

logger = logging.getLogger("lazarus.relay")

_SIGNATURE_RE = re.compile(r"^0x[a-fA-F0-9]{130}$")


def parse_heartbeat_message(message: Union[dict, HeartbeatMessage]) -> HeartbeatMessage:
    if isinstance(message, HeartbeatMessage):
        return message
    if not isinstance(message, dict):
        raise ValidationError("message must be an object")
    try:
        return HeartbeatMessage(
            message=str(message.get("message") or DEFAULT_HEARTBEAT_TEXT),
            timestamp=int(message["timestamp"]),
            nonce=int(message["nonce"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid heartbeat message: {e}") from e


class HeartbeatRelay:
    def __init__(
        self,
        store: HeartbeatStore,
        ledger_client: LedgerClient,
        chain_id: int,
        nonces: Optional[NonceRegistry] = None,
        onchain_sync_seconds: int = 86_400,
        tx_timeout: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._client = ledger_client
        self._chain_id = chain_id
        self._nonces = nonces or NonceRegistry()
        self._sync_seconds = onchain_sync_seconds
        self._tx_timeout = tx_timeout
        self._clock = clock

        self._pending_sync: set[str] = set()
        self._sync_tasks: set[asyncio.Task] = set()

    # ============================================================
    # HEARTBEAT
    # ============================================================

    async def accept(self, address: str, message, signature: str) -> HeartbeatRecord:
        """
        Verify and record one heartbeat.
        Raises ValidationError (bad shape) or AuthenticationError (bad/stale/replayed).
        """
        user = normalize_address(address)
        hb = parse_heartbeat_message(message)
        if not isinstance(signature, str) or not _SIGNATURE_RE.match(signature):
            raise ValidationError("Invalid signature format")

        now = self._clock()
        result = verify_heartbeat_signature(hb, signature, user, self._chain_id, now=now)
        if not result.valid:
            logger.warning(f"Heartbeat rejected for {user[:10]}...: {result.error}")
            raise AuthenticationError(result.error)

        if not self._nonces.check_and_record(user, hb.nonce, hb.timestamp, now=now):
            logger.warning(f"Heartbeat replay blocked for {user[:10]}... (nonce {hb.nonce})")
            raise AuthenticationError("Heartbeat nonce already used")

        info = await self._read_user(user)
        period = self._resolve_period(user, info)
        if info is not None:
            self._maybe_sync_onchain(user, info, now)

        record = self._store.record_heartbeat(user, signature, period, at_ms=int(now * 1000))
        logger.info(f"Heartbeat recorded for {user[:10]}... | period={period}s")
        return record

    async def _read_user(self, user: str) -> Optional[UserInfo]:
        try:
            return await self._client.get_user_info(user)
        except Exception as e:
            logger.warning(f"[On-Chain] Failed to read status for {user[:10]}...: {e}")
            return None

    def _resolve_period(self, user: str, info: Optional[UserInfo]) -> int:
        # Carried forward once known; period changes arrive via the event subscription.
        existing = self._store.get_heartbeat(user)
        if existing is not None:
            return existing.inactivity_period
        if info is not None and info.registered and info.inactivity_period:
            return info.inactivity_period
        return PROTOCOL_RULES.DEFAULT_INACTIVITY_PERIOD_SECONDS

    def _maybe_sync_onchain(self, user: str, info: UserInfo, now: float):
        if not info.registered or info.dead:
            return
        age = int(now) - info.last_heartbeat
        if age <= self._sync_seconds:
            logger.debug(f"[On-Chain] Skipped update for {user[:10]}... (synced {age}s ago)")
            return
        if user in self._pending_sync:
            return
        self._pending_sync.add(user)
        logger.info(f"[On-Chain] Last ping was {age}s ago. Sending pingFor...")
        task = asyncio.create_task(self._ping_for(user))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _ping_for(self, user: str):
        try:
            result = await self._client.ping_for(user, timeout=self._tx_timeout)
            logger.info(f"[On-Chain] pingFor confirmed for {user[:10]}...: {result.tx_hash[:18]}...")
        except Exception as e:
            logger.warning(f"[On-Chain] pingFor failed for {user[:10]}...: {e}")
        finally:
            self._pending_sync.discard(user)

    async def drain(self):
        """Wait for background pingFor transactions (shutdown)."""
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)

    # ============================================================
    # LEDGER SIGNALS
    # ============================================================

    def apply_event(self, event: LedgerEvent):
        """Same cache upsert regardless of whether the event was pushed or polled."""
        if event.name == "Registered":
            period = int(event.args.get("inactivity_period", PROTOCOL_RULES.DEFAULT_INACTIVITY_PERIOD_SECONDS))
            self._store.record_registration(event.user, period, at_ms=int(self._clock() * 1000))
            logger.info(f"Registration observed for {event.user[:10]}... | period={period}s")
        elif event.name == "InactivityPeriodUpdated":
            period = int(event.args["inactivity_period"])
            if self._store.update_inactivity_period(event.user, period):
                logger.info(f"Inactivity period for {event.user[:10]}... -> {period}s")
        elif event.name == "BeneficiaryUpdated":
            logger.info(f"Beneficiary changed for {event.user[:10]}...")

    @property
    def pending_syncs(self) -> int:
        return len(self._pending_sync)
