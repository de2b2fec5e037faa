"""
Core types and helpers for htlc_router.

Swap state machine, request/record types, confirmation and authority
records, and the hash commitment used as the HTLC lock condition.
"""

import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple


class SwapState(Enum):
    """Atomic swap lifecycle states."""
    PENDING = "pending"             # Record created, locks not dispatched yet
    LOCKING = "locking"             # Lock calls dispatched on both legs
    LOCKED = "locked"               # Both legs met their confirmation counts
    COMPLETING = "completing"       # Secret revealed, claims in progress
    COMPLETED = "completed"         # Both claims observed
    EXPIRED = "expired"             # Lock deadline passed (or manual unwind)
    ROLLING_BACK = "rolling_back"   # Refunds in progress
    ROLLED_BACK = "rolled_back"     # Refunds confirmed on every locked leg
    FAILED = "failed"               # Unrecoverable, see manual_intervention


TERMINAL_STATES = frozenset({
    SwapState.COMPLETED,
    SwapState.ROLLED_BACK,
    SwapState.FAILED,
})

# Allowed transitions. The graph is acyclic.
SWAP_TRANSITIONS: Dict[SwapState, frozenset] = {
    SwapState.PENDING: frozenset({SwapState.LOCKING, SwapState.FAILED}),
    SwapState.LOCKING: frozenset({SwapState.LOCKED, SwapState.EXPIRED, SwapState.FAILED}),
    SwapState.LOCKED: frozenset({SwapState.COMPLETING, SwapState.ROLLING_BACK, SwapState.FAILED}),
    SwapState.COMPLETING: frozenset({SwapState.COMPLETED, SwapState.FAILED}),
    SwapState.EXPIRED: frozenset({SwapState.ROLLING_BACK, SwapState.FAILED}),
    SwapState.ROLLING_BACK: frozenset({SwapState.ROLLED_BACK, SwapState.FAILED}),
    SwapState.COMPLETED: frozenset(),
    SwapState.ROLLED_BACK: frozenset(),
    SwapState.FAILED: frozenset(),
}

# Progress heuristic shown in status documents: (percentage, description)
SWAP_PROGRESS: Dict[SwapState, Tuple[int, str]] = {
    SwapState.PENDING: (10, "Atomic swap initiated - waiting for asset locking to begin"),
    SwapState.LOCKING: (40, "Locking assets on both chains"),
    SwapState.LOCKED: (70, "Both assets locked - ready for completion"),
    SwapState.COMPLETING: (85, "Secret revealed - claiming both legs"),
    SwapState.COMPLETED: (100, "Atomic swap completed - both claims observed"),
    SwapState.EXPIRED: (0, "Swap expired before both legs locked"),
    SwapState.ROLLING_BACK: (20, "Rolling back locked assets"),
    SwapState.ROLLED_BACK: (100, "Assets returned to original owners"),
    SwapState.FAILED: (0, "Swap failed"),
}


def can_transition(current: SwapState, new: SwapState) -> bool:
    return new in SWAP_TRANSITIONS[current]


class LegRole(Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class ConfirmationStatus(Enum):
    """Per-router confirmation outcome for a transfer."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DualStatus(Enum):
    """Reconciled view over both routers' confirmation records."""
    PENDING = "pending"
    PARTIAL_CONFIRMED = "partial_confirmed"
    DUAL_CONFIRMED = "dual_confirmed"
    FAILED = "failed"


class AuthorityRole(Enum):
    PRIMARY = "primary"
    BACKUP = "backup"
    NONE = "none"


# =============================================================================
# HTLC Utilities
# =============================================================================

def generate_secret() -> Tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    secret = secrets.token_bytes(32)
    hashlock = hashlib.sha256(secret).digest()
    return secret.hex(), hashlock.hex()


def hash_secret(secret_hex: str) -> str:
    """SHA256 of a hex-encoded preimage, hex encoded."""
    return hashlib.sha256(bytes.fromhex(_strip_0x(secret_hex))).hexdigest()


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Args:
        preimage_hex: 32-byte preimage as hex string
        hashlock_hex: Expected SHA256 hash as hex string

    Returns:
        True if valid
    """
    try:
        preimage = bytes.fromhex(_strip_0x(preimage_hex))
        expected = bytes.fromhex(_strip_0x(hashlock_hex))
        actual = hashlib.sha256(preimage).digest()
        return secrets.compare_digest(actual, expected)
    except (ValueError, TypeError, AttributeError):
        return False


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


# =============================================================================
# Constants
# =============================================================================

# Confirmations required on a chain when the request does not name one
DEFAULT_REQUIRED_CONFIRMATIONS = 3

DEFAULT_TIMEOUT_MINUTES = 30.0

# Window after the lock deadline in which a locked swap may still complete
DEFAULT_CLAIM_WINDOW_SECONDS = 300

# Extra time the initiator's lock outlives the responder's
DEFAULT_TIMELOCK_GAP_SECONDS = 0


def validate_timelock_cascade(initiator_timelock: float, responder_timelock: float,
                              min_gap_seconds: float = 0) -> bool:
    """Validate that the initiator's lock does not expire before the responder's.

    The responder's leg is claimed with the revealed secret, so its refund
    path must open first: T_responder <= T_initiator - min_gap.

    Returns True if valid, raises ValueError if not.
    """
    if min_gap_seconds < 0:
        raise ValueError(f"Negative timelock gap: {min_gap_seconds}s")
    gap = initiator_timelock - responder_timelock
    if gap < min_gap_seconds:
        raise ValueError(
            f"Timelock cascade violated: "
            f"T_initiator={initiator_timelock:.0f}, T_responder={responder_timelock:.0f} "
            f"(gap {gap:.0f}s, min {min_gap_seconds:.0f}s)"
        )
    return True


# =============================================================================
# Swap request / record
# =============================================================================

@dataclass(frozen=True)
class SwapAsset:
    """One side of a swap: what moves on which chain, and to whom."""
    chain: str
    asset_id: str
    amount: int             # Smallest unit (wei, tinybar, mist, ...)
    recipient: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "asset_id": self.asset_id,
            "amount": self.amount,
            "recipient": self.recipient,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapAsset":
        return cls(
            chain=data["chain"],
            asset_id=data["asset_id"],
            amount=int(data["amount"]),
            recipient=data["recipient"],
        )


@dataclass(frozen=True)
class SwapRequest:
    """Immutable swap submission.

    initiator_id / responder_id are the routers originating each leg; each
    must hold authority over the asset it sends.
    """
    initiator_id: str
    responder_id: str
    initiator_asset: SwapAsset
    responder_asset: SwapAsset
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    required_confirmations: Dict[str, int] = field(default_factory=dict)
    auto_rollback: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    def confirmations_for(self, chain: str,
                          default: int = DEFAULT_REQUIRED_CONFIRMATIONS) -> int:
        return int(self.required_confirmations.get(chain, default))

    def validate(self):
        """Raise InvalidSwapRequest describing the first problem found."""
        from .errors import InvalidSwapRequest

        if not self.initiator_id or not self.responder_id:
            raise InvalidSwapRequest("initiator_id and responder_id are required")
        if self.initiator_id == self.responder_id:
            raise InvalidSwapRequest("initiator and responder must be different routers")
        for name, asset in (("initiator_asset", self.initiator_asset),
                            ("responder_asset", self.responder_asset)):
            if not asset.chain or not asset.asset_id:
                raise InvalidSwapRequest(f"{name}: chain and asset_id are required")
            if not asset.recipient:
                raise InvalidSwapRequest(f"{name}: recipient is required")
            if asset.amount <= 0:
                raise InvalidSwapRequest(f"{name}: amount must be positive")
        if (self.initiator_asset.chain == self.responder_asset.chain and
                self.initiator_asset.asset_id == self.responder_asset.asset_id):
            raise InvalidSwapRequest("Cannot swap an asset for itself")
        if self.timeout_minutes <= 0:
            raise InvalidSwapRequest("timeout_minutes must be positive")
        for chain, count in self.required_confirmations.items():
            if int(count) < 0:
                raise InvalidSwapRequest(f"required_confirmations[{chain}] must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initiator_id": self.initiator_id,
            "responder_id": self.responder_id,
            "initiator_asset": self.initiator_asset.to_dict(),
            "responder_asset": self.responder_asset.to_dict(),
            "timeout_minutes": self.timeout_minutes,
            "required_confirmations": dict(self.required_confirmations),
            "auto_rollback": self.auto_rollback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRequest":
        return cls(
            initiator_id=data["initiator_id"],
            responder_id=data["responder_id"],
            initiator_asset=SwapAsset.from_dict(data["initiator_asset"]),
            responder_asset=SwapAsset.from_dict(data["responder_asset"]),
            timeout_minutes=float(data.get("timeout_minutes", DEFAULT_TIMEOUT_MINUTES)),
            required_confirmations={
                k: int(v) for k, v in (data.get("required_confirmations") or {}).items()
            },
            auto_rollback=bool(data.get("auto_rollback", True)),
        )


@dataclass
class SwapLeg:
    """Per-leg lock/claim/refund tracking."""
    role: LegRole
    chain: str
    asset_id: str
    amount: int
    recipient: str
    router_id: str
    required_confirmations: int
    timelock: float                     # Unix timestamp the lock becomes refundable

    lock_ref: Optional[str] = None
    lock_confirmations: int = 0
    locked: bool = False                # Confirmations >= required
    locked_at: Optional[float] = None
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    confirmation_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "chain": self.chain,
            "asset_id": self.asset_id,
            "amount": self.amount,
            "recipient": self.recipient,
            "router_id": self.router_id,
            "required_confirmations": self.required_confirmations,
            "timelock": self.timelock,
            "lock_ref": self.lock_ref,
            "lock_confirmations": self.lock_confirmations,
            "locked": self.locked,
            "locked_at": self.locked_at,
            "claim_ref": self.claim_ref,
            "refund_ref": self.refund_ref,
            "confirmation_id": self.confirmation_id,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapLeg":
        return cls(
            role=LegRole(data["role"]),
            chain=data["chain"],
            asset_id=data["asset_id"],
            amount=int(data["amount"]),
            recipient=data["recipient"],
            router_id=data["router_id"],
            required_confirmations=int(data["required_confirmations"]),
            timelock=float(data["timelock"]),
            lock_ref=data.get("lock_ref"),
            lock_confirmations=int(data.get("lock_confirmations", 0)),
            locked=bool(data.get("locked", False)),
            locked_at=data.get("locked_at"),
            claim_ref=data.get("claim_ref"),
            refund_ref=data.get("refund_ref"),
            confirmation_id=data.get("confirmation_id"),
            error=data.get("error"),
        )


@dataclass
class SwapEvent:
    """Entry in a swap's append-only event log."""
    event_id: str
    type: str
    message: str
    timestamp: float
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    chain: Optional[str] = None
    ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "chain": self.chain,
            "ref": self.ref,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapEvent":
        return cls(
            event_id=data["event_id"],
            type=data["type"],
            message=data.get("message", ""),
            timestamp=float(data["timestamp"]),
            from_state=data.get("from_state"),
            to_state=data.get("to_state"),
            chain=data.get("chain"),
            ref=data.get("ref"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class RollbackInfo:
    reason: str
    started_at: float
    completed_at: Optional[float] = None
    legs_unwound: List[str] = field(default_factory=list)
    manual_intervention: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "legs_unwound": list(self.legs_unwound),
            "manual_intervention": self.manual_intervention,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackInfo":
        return cls(
            reason=data["reason"],
            started_at=float(data["started_at"]),
            completed_at=data.get("completed_at"),
            legs_unwound=list(data.get("legs_unwound") or []),
            manual_intervention=bool(data.get("manual_intervention", False)),
        )


@dataclass
class SwapRecord:
    """Mutable swap state. Owned by SwapRegistry, written by the coordinator."""
    swap_id: str
    request: SwapRequest
    secret_hash: str
    secret: Optional[str]               # Dropped once revealed on-chain
    state: SwapState
    initiator: SwapLeg
    responder: SwapLeg
    created_at: float
    deadline: float                     # Lock deadline (unix)
    claim_deadline: float               # Last moment a locked swap may complete
    events: List[SwapEvent] = field(default_factory=list)
    rollback: Optional[RollbackInfo] = None
    completion_ref: Optional[str] = None
    completed_at: Optional[float] = None
    revealed_secret: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    manual_intervention: bool = False
    updated_at: float = 0.0

    # Monotonic mirrors of the deadlines, rebuilt on load
    deadline_monotonic: float = field(default=0.0, repr=False, compare=False)
    claim_deadline_monotonic: float = field(default=0.0, repr=False, compare=False)

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at
        if not self.deadline_monotonic:
            self.sync_monotonic()

    def sync_monotonic(self):
        """Project the wall-clock deadlines onto time.monotonic()."""
        offset = time.monotonic() - time.time()
        self.deadline_monotonic = self.deadline + offset
        self.claim_deadline_monotonic = self.claim_deadline + offset

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def legs(self) -> Tuple[SwapLeg, SwapLeg]:
        return self.initiator, self.responder

    def leg(self, role: LegRole) -> SwapLeg:
        return self.initiator if role == LegRole.INITIATOR else self.responder

    def add_event(self, type: str, message: str, from_state: Optional[SwapState] = None,
                  to_state: Optional[SwapState] = None, chain: Optional[str] = None,
                  ref: Optional[str] = None, **metadata) -> SwapEvent:
        now = time.time()
        event = SwapEvent(
            event_id=f"{self.swap_id}_{len(self.events):03d}_{type}",
            type=type,
            message=message,
            timestamp=now,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value if to_state else None,
            chain=chain,
            ref=ref,
            metadata=metadata,
        )
        self.events.append(event)
        self.updated_at = now
        return event

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "request": self.request.to_dict(),
            "secret_hash": self.secret_hash,
            "secret": self.secret if include_secret else None,
            "state": self.state.value,
            "initiator": self.initiator.to_dict(),
            "responder": self.responder.to_dict(),
            "created_at": self.created_at,
            "deadline": self.deadline,
            "claim_deadline": self.claim_deadline,
            "events": [e.to_dict() for e in self.events],
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "completion_ref": self.completion_ref,
            "completed_at": self.completed_at,
            "revealed_secret": self.revealed_secret,
            "result": dict(self.result) if self.result else None,
            "failure_reason": self.failure_reason,
            "manual_intervention": self.manual_intervention,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        return cls(
            swap_id=data["swap_id"],
            request=SwapRequest.from_dict(data["request"]),
            secret_hash=data["secret_hash"],
            secret=data.get("secret"),
            state=SwapState(data["state"]),
            initiator=SwapLeg.from_dict(data["initiator"]),
            responder=SwapLeg.from_dict(data["responder"]),
            created_at=float(data["created_at"]),
            deadline=float(data["deadline"]),
            claim_deadline=float(data["claim_deadline"]),
            events=[SwapEvent.from_dict(e) for e in data.get("events") or []],
            rollback=RollbackInfo.from_dict(data["rollback"]) if data.get("rollback") else None,
            completion_ref=data.get("completion_ref"),
            completed_at=data.get("completed_at"),
            revealed_secret=data.get("revealed_secret"),
            result=data.get("result"),
            failure_reason=data.get("failure_reason"),
            manual_intervention=bool(data.get("manual_intervention", False)),
            updated_at=float(data.get("updated_at") or data["created_at"]),
        )


# =============================================================================
# Confirmation / authority records
# =============================================================================

@dataclass
class ConfirmationRecord:
    """One router's confirmation of one transfer."""
    confirmation_id: str
    transfer_id: str
    router_id: str
    status: ConfirmationStatus
    timestamp: float
    signature: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    rollback_reason: Optional[str] = None
    rollback_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmation_id": self.confirmation_id,
            "transfer_id": self.transfer_id,
            "router_id": self.router_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "metadata": dict(self.metadata),
            "history": [dict(h) for h in self.history],
            "rollback_reason": self.rollback_reason,
            "rollback_timestamp": self.rollback_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfirmationRecord":
        return cls(
            confirmation_id=data["confirmation_id"],
            transfer_id=data["transfer_id"],
            router_id=data["router_id"],
            status=ConfirmationStatus(data["status"]),
            timestamp=float(data["timestamp"]),
            signature=data.get("signature", ""),
            metadata=dict(data.get("metadata") or {}),
            history=list(data.get("history") or []),
            rollback_reason=data.get("rollback_reason"),
            rollback_timestamp=data.get("rollback_timestamp"),
        )


@dataclass
class DualConfirmationView:
    """Derived view over the records of one transfer. Never stored."""
    transfer_id: str
    status: DualStatus
    confirmations: Dict[str, ConfirmationRecord]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "status": self.status.value,
            "confirmations": {
                router_id: record.to_dict()
                for router_id, record in self.confirmations.items()
            },
            "timestamp": self.timestamp,
        }


@dataclass
class AssetAuthority:
    """Which router may originate transfers of an asset."""
    asset_id: str
    primary_router_id: str
    backup_router_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0
    history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "primary_router_id": self.primary_router_id,
            "backup_router_ids": list(self.backup_router_ids),
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetAuthority":
        return cls(
            asset_id=data["asset_id"],
            primary_router_id=data["primary_router_id"],
            backup_router_ids=list(data.get("backup_router_ids") or []),
            metadata=dict(data.get("metadata") or {}),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
            history=list(data.get("history") or []),
        )


@dataclass
class AuthorityValidation:
    """Result of AuthorityRegistry.validate_authority."""
    authorized: bool
    role: AuthorityRole
    reason: str
    primary_router_id: Optional[str] = None
    backup_router_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorized": self.authorized,
            "role": self.role.value,
            "reason": self.reason,
            "primary_router_id": self.primary_router_id,
            "backup_router_ids": list(self.backup_router_ids),
        }
