#data_models.py

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepAction(str, Enum):
    """Kinds of irreversible steps an execution can take."""
    BUY = "buy"
    BRIDGE_FORWARD = "bridge_forward"
    SELL = "sell"
    BRIDGE_BACK = "bridge_back"
    FLASH_LOAN_BUY = "flash_loan_buy"
    ATOMIC_SWAP = "atomic_swap"
    REPAY = "repay"


class StepStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class Token:
    """A fungible token and its contract address on every network it is listed on."""
    symbol: str
    decimals: int
    addresses: Dict[str, str] = field(default_factory=dict, hash=False)
    name: str = ""

    def address_on(self, network: str) -> Optional[str]:
        return self.addresses.get(network) or None

    def is_listed_on(self, network: str) -> bool:
        return self.address_on(network) is not None

    @property
    def networks(self) -> List[str]:
        return [network for network, address in self.addresses.items() if address]


@dataclass(frozen=True)
class PriceQuote:
    """Price of a token on one network, in the reference unit and in fiat."""
    token_symbol: str
    network: str
    price_in_reference: Decimal
    price_in_fiat: Decimal

    @property
    def fiat_per_reference(self) -> Decimal:
        if self.price_in_reference == 0:
            return ZERO
        return self.price_in_fiat / self.price_in_reference


@dataclass(frozen=True)
class GasEstimate:
    gas_units: int
    gas_cost: Decimal
    is_default: bool = False


@dataclass(frozen=True)
class SwapQuote:
    exchange: str
    network: str
    from_token: str
    to_token: str
    input_amount: Decimal
    output_amount: Decimal
    fee_tier: Optional[int] = None

    @property
    def rate(self) -> Decimal:
        if self.input_amount == 0:
            return ZERO
        return self.output_amount / self.input_amount


@dataclass
class SwapResult:
    tx_ref: str
    exchange: str
    input_amount: Decimal
    output_amount: Decimal
    status: str = "success"
    gas_cost: Decimal = ZERO
    min_output: Optional[Decimal] = None


@dataclass
class BridgeTransfer:
    """A submitted (not necessarily completed) cross-network transfer."""
    tx_ref: str
    provider: str
    source_network: str
    dest_network: str
    token: str
    amount: Decimal
    recipient: str
    status: str = "submitted"
    expected_output: Optional[Decimal] = None
    gas_cost: Decimal = ZERO
    deposit_id: Optional[str] = None


@dataclass(frozen=True)
class TransferStatus:
    """Provider-reported state of a transfer: pending, filled or failed."""
    state: str
    received_amount: Optional[Decimal] = None
    fill_tx_ref: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.state in ("filled", "failed")


@dataclass(frozen=True)
class ProfitabilityAnalysis:
    """
    Expected amounts at each of the four conceptual steps and the itemized costs.
    net_profit == expected_proceeds - capital_in - total_costs.
    """
    is_profitable: bool
    reason: str
    capital_in: Decimal = ZERO
    price_diff_percentage: Decimal = ZERO
    expected_buy_amount: Decimal = ZERO
    bridge_fee: Decimal = ZERO
    expected_sell_amount: Decimal = ZERO
    expected_proceeds: Decimal = ZERO
    gas_cost_buy: Decimal = ZERO
    gas_cost_sell: Decimal = ZERO
    bridge_back_fee: Decimal = ZERO
    net_profit: Decimal = ZERO
    net_profit_fiat: Decimal = ZERO
    roi: Decimal = ZERO
    recommended_trade_size: Decimal = ZERO
    sufficient_margin: bool = False

    @property
    def total_costs(self) -> Decimal:
        return self.gas_cost_buy + self.gas_cost_sell + self.bridge_back_fee

    @classmethod
    def not_profitable(cls, reason: str, capital_in: Decimal = ZERO) -> "ProfitabilityAnalysis":
        return cls(is_profitable=False, reason=reason, capital_in=capital_in)

    def to_dict(self) -> Dict[str, Any]:
        d = {k: _jsonable(v) for k, v in asdict(self).items()}
        d["total_costs"] = str(self.total_costs)
        return d


@dataclass(frozen=True)
class ArbitrageOpportunity:
    token: Token
    buy_network: str
    sell_network: str
    buy_quote: PriceQuote
    sell_quote: PriceQuote
    price_difference: Decimal
    profitability: ProfitabilityAnalysis
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def estimated_profit_fiat(self) -> Decimal:
        return self.profitability.net_profit_fiat

    def summary(self) -> Dict[str, Any]:
        """Lightweight view for status output."""
        return {
            "token": self.token.symbol,
            "buy_network": self.buy_network,
            "sell_network": self.sell_network,
            "price_difference": f"{self.price_difference:.2f}%",
            "estimated_profit": f"{self.estimated_profit_fiat:.2f} USD",
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class StepPlan:
    step: int
    action: StepAction
    network: str
    details: str


@dataclass(frozen=True)
class Strategy:
    """Fully-parameterized plan for one execution attempt."""
    opportunity: ArbitrageOpportunity
    use_flash_loan: bool
    trade_size: Decimal
    gas_estimate_buy: GasEstimate
    gas_estimate_sell: GasEstimate
    bridge_fee: Decimal
    bridge_time_minutes: int
    steps: Tuple[StepPlan, ...]

    @property
    def estimated_time_minutes(self) -> int:
        return self.bridge_time_minutes * 2

    @property
    def estimated_profit(self) -> Decimal:
        return self.opportunity.profitability.net_profit

    @property
    def estimated_profit_fiat(self) -> Decimal:
        return self.opportunity.profitability.net_profit_fiat

    @property
    def estimated_fees(self) -> Decimal:
        return self.gas_estimate_buy.gas_cost + self.gas_estimate_sell.gas_cost + self.bridge_fee

    @classmethod
    def unplanned(cls, opportunity: ArbitrageOpportunity) -> "Strategy":
        """Placeholder attached to executions that failed before a plan existed."""
        return cls(opportunity=opportunity, use_flash_loan=False, trade_size=ZERO,
                   gas_estimate_buy=GasEstimate(0, ZERO), gas_estimate_sell=GasEstimate(0, ZERO),
                   bridge_fee=ZERO, bridge_time_minutes=0, steps=())


@dataclass
class StepRecord:
    step: int
    action: StepAction
    network: str
    status: StepStatus = StepStatus.IN_PROGRESS
    tx_ref: Optional[str] = None
    input_amount: Optional[Decimal] = None
    output_amount: Optional[Decimal] = None
    gas_cost: Decimal = ZERO
    details: str = ""
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    def complete(self, tx_ref: Optional[str], input_amount: Decimal, output_amount: Decimal, gas_cost: Decimal = ZERO):
        self.tx_ref = tx_ref
        self.input_amount = input_amount
        self.output_amount = output_amount
        self.gas_cost = gas_cost
        self.status = StepStatus.SUCCESS
        self.ended_at = utc_now()

    def fail(self, error: str, tx_ref: Optional[str] = None):
        if tx_ref:
            self.tx_ref = tx_ref
        self.status = StepStatus.FAILED
        self.error = error
        self.ended_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class PnLResult:
    starting_balance: Decimal
    ending_balance: Decimal
    gross_profit: Decimal
    gas_used: Decimal
    net_profit: Decimal
    roi: Decimal
    is_profit: bool

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass
class Execution:
    strategy: Strategy
    started_at: datetime = field(default_factory=utc_now)
    steps: List[StepRecord] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    ended_at: Optional[datetime] = None
    start_balance: Optional[Decimal] = None
    end_balance: Optional[Decimal] = None
    total_gas_used: Decimal = ZERO
    pnl: Optional[PnLResult] = None
    error: Optional[str] = None
    flash_loan: bool = False
    flash_loan_tx_ref: Optional[str] = None
    flash_loan_amount: Optional[Decimal] = None
    requires_manual_intervention: bool = False
    recovery_note: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def finish(self, status: ExecutionStatus, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.ended_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        opportunity = self.strategy.opportunity
        return {
            "token": opportunity.token.symbol,
            "buy_network": opportunity.buy_network,
            "sell_network": opportunity.sell_network,
            "trade_size": str(self.strategy.trade_size),
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
            "start_balance": _jsonable(self.start_balance),
            "end_balance": _jsonable(self.end_balance),
            "total_gas_used": str(self.total_gas_used),
            "pnl": self.pnl.to_dict() if self.pnl else None,
            "error": self.error,
            "flash_loan": self.flash_loan,
            "flash_loan_tx_ref": self.flash_loan_tx_ref,
            "flash_loan_amount": _jsonable(self.flash_loan_amount),
            "requires_manual_intervention": self.requires_manual_intervention,
            "recovery_note": self.recovery_note,
        }


@dataclass
class TradeRecord:
    """A dataclass for durable trade history entries."""
    id: int
    timestamp: str
    token: str
    buy_network: str
    sell_network: str
    buy_price: Decimal
    sell_price: Decimal
    trade_size: Decimal
    status: str
    net_profit: Decimal = ZERO
    gross_profit: Decimal = ZERO
    gas_cost: Decimal = ZERO
    duration_ms: int = 0
    flash_loan: bool = False
    error: Optional[str] = None
    requires_manual_intervention: bool = False
    steps: List[Dict[str, Any]] = field(default_factory=list)

    DECIMAL_FIELDS = ("buy_price", "sell_price", "trade_size", "net_profit", "gross_profit", "gas_cost")

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        values = dict(data)
        for name in cls.DECIMAL_FIELDS:
            values[name] = Decimal(str(values.get(name, "0")))
        return cls(**values)


@dataclass
class PnLHistoryPoint:
    timestamp: str
    trade_id: int
    profit: Decimal
    balance: Decimal
    token: str

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PnLHistoryPoint":
        values = dict(data)
        values["profit"] = Decimal(str(values["profit"]))
        values["balance"] = Decimal(str(values["balance"]))
        return cls(**values)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
