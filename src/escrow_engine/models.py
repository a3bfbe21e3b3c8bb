"""Domain model for escrow contracts.

A contract is one envelope (parties, custodial wallet, status, deposit
flags, timestamps) plus a kind-specific payload. The three payloads form a
tagged union, ``EscrowTerms``, and code that needs kind-specific behavior
matches on the payload type instead of subclassing the envelope.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4

from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Convert user input to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    try:
        return Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{field_name} must be a number", field=field_name) from e


# =============================================================================
# Enums
# =============================================================================

class EscrowKind(str, Enum):
    TRADITIONAL = "traditional"
    # persisted under its historical name
    MILESTONE = "simple_buyer"
    ATOMIC_SWAP = "atomic_swap"


class EscrowStatus(str, Enum):
    CREATED = "created"
    BUYER_DEPOSITED = "buyer_deposited"
    SELLER_DEPOSITED = "seller_deposited"
    FULLY_FUNDED = "fully_funded"
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


PRE_FUNDING_STATUSES = frozenset({
    EscrowStatus.CREATED,
    EscrowStatus.BUYER_DEPOSITED,
    EscrowStatus.SELLER_DEPOSITED,
})

TERMINAL_STATUSES = frozenset({
    EscrowStatus.COMPLETED,
    EscrowStatus.CANCELLED,
    EscrowStatus.REFUNDED,
})


class PartyRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    WORK_SUBMITTED = "work_submitted"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ResolutionAction(str, Enum):
    RELEASE_TO_SELLER = "release_to_seller"
    REFUND_TO_BUYER = "refund_to_buyer"
    PARTIAL_SPLIT = "partial_split"


class EvidenceType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    LINK = "link"
    SCREENSHOT = "screenshot"


class CancellationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    REJECTED = "rejected"


class TimeoutType(str, Enum):
    DEPOSIT = "deposit_timeout"
    CONFIRMATION = "confirmation_timeout"
    MILESTONE = "milestone_timeout"
    DISPUTE = "dispute_timeout"
    SWAP = "swap_timeout"


class MultiSigProvider(str, Enum):
    SQUADS = "squads"
    GOKI = "goki"
    SERUM = "serum"
    UNKNOWN = "unknown"


class MultiSigStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_SIGNED = "partially_signed"
    READY = "ready"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class ActionType(str, Enum):
    CREATED = "created"
    DEPOSITED = "deposited"
    CONFIRMED = "confirmed"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    SWAPPED = "swapped"
    TIMEOUT = "timeout"
    ADMIN_ACTION = "admin_action"
    TIMEOUT_EXTENDED = "timeout_extended"
    MULTISIG_CREATED = "multisig_created"
    MULTISIG_SIGNED = "multisig_signed"
    MULTISIG_EXECUTED = "multisig_executed"
    MULTISIG_CANCELLED = "multisig_cancelled"


class ReleaseType(str, Enum):
    MILESTONE_RELEASE = "milestone_release"
    FULL_RELEASE = "full_release"
    SECURITY_DEPOSIT_RETURN = "security_deposit_return"
    PLATFORM_FEE = "platform_fee"
    REFUND = "refund"
    DISPUTE_RESOLUTION = "dispute_resolution"
    SWAP_EXECUTION = "swap_execution"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class KeyOperation(str, Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    RECOVER = "recover"
    VALIDATE = "validate"
    ROTATE = "rotate"


# =============================================================================
# Assets
# =============================================================================

@dataclass(frozen=True, slots=True)
class Asset:
    """A transferable asset: the native coin (no mint) or a token mint."""
    symbol: str
    mint: Optional[str] = None
    decimals: int = 9

    @property
    def is_native(self) -> bool:
        return self.mint is None

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)

    def to_base_units(self, amount: Decimal) -> int:
        return int((amount / self.quantum).to_integral_value())

    def from_base_units(self, units: int) -> Decimal:
        return Decimal(units) * self.quantum


SOL = Asset("SOL", None, 9)
USDC = Asset("USDC", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6)
USDT = Asset("USDT", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6)

SUPPORTED_ASSETS: dict[str, Asset] = {a.symbol: a for a in (SOL, USDC, USDT)}


def resolve_asset(token: str, mint: Optional[str] = None, decimals: int = 6) -> Asset:
    """Resolve a token symbol (plus mint for unlisted tokens) to an Asset."""
    if not token:
        raise ValidationError("Token is required", field="token")
    symbol = token.upper()
    if symbol in SUPPORTED_ASSETS and mint is None:
        return SUPPORTED_ASSETS[symbol]
    if mint is None:
        raise ValidationError(
            f"Token {symbol} is not supported without a mint address. "
            f"Supported: {', '.join(SUPPORTED_ASSETS)}",
            field="token",
        )
    return Asset(symbol, mint, decimals)


# =============================================================================
# Contract payloads (tagged union)
# =============================================================================

@dataclass(slots=True)
class TraditionalTerms:
    """Buyer pays, seller posts a security deposit, both must confirm."""
    buyer_amount: Decimal
    seller_deposit: Decimal
    asset: Asset
    buyer_confirmed: bool = False
    seller_confirmed: bool = False
    buyer_confirmed_at: Optional[datetime] = None
    seller_confirmed_at: Optional[datetime] = None


@dataclass(slots=True)
class MilestoneTerms:
    """Buyer-only funding released in sequential percentage slices."""
    total_amount: Decimal
    asset: Asset


@dataclass(slots=True)
class AtomicSwapTerms:
    """Party A (buyer slot) swaps amount_a of asset_a for party B's amount_b of asset_b."""
    asset_a: Asset
    amount_a: Decimal
    asset_b: Asset
    amount_b: Decimal
    swap_executed: bool = False
    swap_tx_refs: list[str] = field(default_factory=list)
    executed_at: Optional[datetime] = None


EscrowTerms = Union[TraditionalTerms, MilestoneTerms, AtomicSwapTerms]


def kind_of(terms: EscrowTerms) -> EscrowKind:
    match terms:
        case TraditionalTerms():
            return EscrowKind.TRADITIONAL
        case MilestoneTerms():
            return EscrowKind.MILESTONE
        case AtomicSwapTerms():
            return EscrowKind.ATOMIC_SWAP
    raise TypeError(f"Unknown escrow terms: {type(terms).__name__}")


@dataclass(slots=True)
class EscrowContract:
    """Shared envelope of every escrow contract."""
    id: str
    buyer_wallet: str
    seller_wallet: str
    terms: EscrowTerms
    escrow_wallet: str
    encrypted_secret: str = field(repr=False)
    status: EscrowStatus = EscrowStatus.CREATED
    buyer_deposited: bool = False
    seller_deposited: bool = False
    description: Optional[str] = None
    timeout_hours: int = 72
    created_at: datetime = field(default_factory=utcnow)
    funded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    @property
    def kind(self) -> EscrowKind:
        return kind_of(self.terms)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_party(self, wallet: str) -> bool:
        return wallet in (self.buyer_wallet, self.seller_wallet)

    def role_of(self, wallet: str) -> Optional[PartyRole]:
        if wallet == self.buyer_wallet:
            return PartyRole.BUYER
        if wallet == self.seller_wallet:
            return PartyRole.SELLER
        return None

    def wallet_for(self, role: PartyRole) -> str:
        if role is PartyRole.BUYER:
            return self.buyer_wallet
        if role is PartyRole.SELLER:
            return self.seller_wallet
        raise ValueError(f"No wallet for role {role.value}")

    def has_deposited(self, role: PartyRole) -> bool:
        return self.buyer_deposited if role is PartyRole.BUYER else self.seller_deposited

    def expected_deposit(self, role: PartyRole) -> Optional[tuple[Asset, Decimal]]:
        """Asset and amount the given party must deposit, None if it deposits nothing."""
        match self.terms:
            case TraditionalTerms(buyer_amount=buyer_amount, seller_deposit=seller_deposit, asset=asset):
                return (asset, buyer_amount if role is PartyRole.BUYER else seller_deposit)
            case MilestoneTerms(total_amount=total, asset=asset):
                return (asset, total) if role is PartyRole.BUYER else None
            case AtomicSwapTerms(asset_a=asset_a, amount_a=amount_a, asset_b=asset_b, amount_b=amount_b):
                return (asset_a, amount_a) if role is PartyRole.BUYER else (asset_b, amount_b)
        raise TypeError(f"Unknown escrow terms: {type(self.terms).__name__}")

    def required_roles(self) -> tuple[PartyRole, ...]:
        return tuple(
            role for role in (PartyRole.BUYER, PartyRole.SELLER)
            if self.expected_deposit(role) is not None
        )


def is_fully_funded(contract: EscrowContract) -> bool:
    """Kind-specific funding predicate; a pure function of the deposit flags."""
    match contract.terms:
        case MilestoneTerms():
            return contract.buyer_deposited
        case TraditionalTerms() | AtomicSwapTerms():
            return contract.buyer_deposited and contract.seller_deposited
    raise TypeError(f"Unknown escrow terms: {type(contract.terms).__name__}")


# =============================================================================
# Owned records
# =============================================================================

@dataclass(slots=True)
class Milestone:
    id: str
    escrow_id: str
    order: int
    description: str
    percentage: Decimal
    amount: Decimal
    status: MilestoneStatus = MilestoneStatus.PENDING
    seller_notes: Optional[str] = None
    seller_evidence: list[str] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    buyer_notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    tx_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0


@dataclass(slots=True)
class Deposit:
    id: str
    escrow_id: str
    depositor_wallet: str
    party_role: PartyRole
    amount: Decimal
    asset: Asset
    tx_ref: str
    confirmed: bool = False
    detected_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    version: int = 0


@dataclass(slots=True)
class Dispute:
    id: str
    escrow_id: str
    raised_by: str
    party_role: PartyRole
    reason: str
    milestone_id: Optional[str] = None
    description: Optional[str] = None
    priority: DisputePriority = DisputePriority.NORMAL
    status: DisputeStatus = DisputeStatus.OPEN
    resolution_action: Optional[ResolutionAction] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_tx_refs: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)


@dataclass(slots=True)
class Evidence:
    id: str
    escrow_id: str
    submitted_by: str
    party_role: PartyRole
    evidence_type: EvidenceType
    content: Optional[str] = None
    file_url: Optional[str] = None
    dispute_id: Optional[str] = None
    milestone_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class CancellationRequest:
    id: str
    escrow_id: str
    requested_by: str
    reason: str
    buyer_approved: bool = False
    seller_approved: bool = False
    buyer_approved_at: Optional[datetime] = None
    seller_approved_at: Optional[datetime] = None
    status: CancellationStatus = CancellationStatus.PENDING
    refund_tx_refs: list[str] = field(default_factory=list)
    executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def fully_approved(self) -> bool:
        return self.buyer_approved and self.seller_approved


@dataclass(slots=True)
class EscrowTimeout:
    id: str
    escrow_id: str
    timeout_type: TimeoutType
    expires_at: datetime
    warning_at: Optional[datetime] = None
    warning_sent: bool = False
    expired: bool = False
    resolved: bool = False
    resolution: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    version: int = 0


@dataclass(slots=True)
class MultiSigTransaction:
    id: str
    escrow_id: str
    wallet: str
    provider: MultiSigProvider
    required_signatures: int
    authorized_signers: list[str]
    signed_by: list[str] = field(default_factory=list)
    status: MultiSigStatus = MultiSigStatus.PENDING
    transaction_data: str = ""
    tx_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    version: int = 0

    @property
    def current_signatures(self) -> int:
        return len(self.signed_by)


@dataclass(slots=True)
class AuditAction:
    """Append-only audit row. ``entry_hash`` chains each row to its predecessor."""
    id: str
    escrow_id: str
    actor: str
    action: ActionType
    notes: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    milestone_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    previous_hash: str = ""
    entry_hash: str = ""


@dataclass(slots=True)
class AdminAction:
    id: str
    escrow_id: str
    admin_wallet: str
    action: str
    decision: str
    notes: str
    dispute_id: Optional[str] = None
    timeout_id: Optional[str] = None
    amount_to_buyer: Optional[Decimal] = None
    amount_to_seller: Optional[Decimal] = None
    tx_refs: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class KeyAccessRecord:
    id: str
    operation: KeyOperation
    actor: str
    purpose: str
    success: bool
    escrow_id: Optional[str] = None
    key_fingerprint: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class TransferInstruction:
    """One destination of a fund movement out of a custodial wallet."""
    recipient: str
    amount: Decimal
    purpose: ReleaseType


@dataclass(slots=True)
class Settlement:
    """Persisted intent for one fund movement, keyed by (escrow, event).

    Moves PENDING -> SIGNED (tx ref known, not yet confirmed) -> CONFIRMED,
    or FAILED when the ledger rejected it and a fresh attempt is allowed.
    """
    id: str
    escrow_id: str
    event_key: str
    release_type: ReleaseType
    asset: Asset
    transfers: list[TransferInstruction]
    status: SettlementStatus = SettlementStatus.PENDING
    tx_ref: Optional[str] = None
    payload: Optional[str] = field(default=None, repr=False)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    version: int = 0

    @property
    def gross(self) -> Decimal:
        return sum((t.amount for t in self.transfers), Decimal("0"))

    def amount_to(self, recipient: str) -> Decimal:
        return sum(
            (t.amount for t in self.transfers if t.recipient == recipient), Decimal("0")
        )
